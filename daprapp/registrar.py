"""Lookup of topic subscriptions and their handlers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from daprapp.common import (
    Subscription,
    TopicEventHandler,
    TopicEventSubscriber,
    as_subscriber,
)
from daprapp.subscription import TopicSubscription


@dataclass
class TopicRegistration:
    """A subscription together with its default and per-route handlers."""

    subscription: TopicSubscription
    default_handler: Optional[TopicEventSubscriber] = None
    route_handlers: dict[str, TopicEventSubscriber] = field(default_factory=dict)


class TopicRegistrar(dict):
    """Maps ``<pubsub>-<topic>`` (or ``<pubsub>`` when topic validation is
    disabled) to its :class:`TopicRegistration`."""

    def add_subscription(
        self,
        sub: Subscription,
        subscriber: Union[TopicEventSubscriber, TopicEventHandler, None],
    ) -> None:
        """Register ``subscriber`` for ``sub``, merging routes per topic."""
        if not sub.topic:
            raise ValueError("topic name required")
        if not sub.pubsub_name:
            raise ValueError("pub/sub name required")
        handler = as_subscriber(subscriber)

        if sub.disable_topic_validation:
            key = sub.pubsub_name
        else:
            key = f"{sub.pubsub_name}-{sub.topic}"

        registration = self.get(key)
        if registration is None:
            registration = TopicRegistration(
                TopicSubscription(sub.pubsub_name, sub.topic, sub.dead_letter_topic)
            )
            registration.subscription.set_metadata(sub.metadata)
            self[key] = registration

        if sub.match:
            registration.subscription.add_routing_rule(
                sub.route, sub.match, sub.priority
            )
        else:
            registration.subscription.set_default_route(sub.route)
            registration.default_handler = handler
        registration.route_handlers[sub.route] = handler