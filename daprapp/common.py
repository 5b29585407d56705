"""Shared event types, handler contracts and the service interface."""

from __future__ import annotations

import abc
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

APP_API_TOKEN_ENV_VAR = "APP_API_TOKEN"
API_TOKEN_KEY = "dapr-api-token"


@dataclass
class TopicEvent:
    """Content of an inbound topic message (a CloudEvents envelope)."""

    id: str = ""
    spec_version: str = ""
    type: str = ""
    source: str = ""
    data_content_type: str = ""
    data: Any = None
    raw_data: bytes = b""
    data_base64: str = ""
    subject: str = ""
    topic: str = ""
    pubsub_name: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    trace_id: str = ""
    trace_parent: str = ""

    def struct(self) -> Any:
        """Decode the raw event payload as JSON."""
        return json.loads(self.raw_data)


@dataclass
class InvocationEvent:
    """Input of a service invocation."""

    data: Optional[bytes] = None
    content_type: str = ""
    data_type_url: str = ""
    verb: str = ""
    query_string: str = ""
    metadata: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Content:
    """Generic data content returned by an invocation handler."""

    data: Optional[bytes] = None
    content_type: str = ""
    data_type_url: str = ""


@dataclass
class BindingEvent:
    """Input of a binding invocation handler."""

    data: Optional[bytes] = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class Subscription:
    """A single topic subscription as declared by the application."""

    pubsub_name: str = ""
    topic: str = ""
    metadata: Optional[dict[str, str]] = None
    route: str = ""
    match: str = ""
    priority: int = 0
    disable_topic_validation: bool = False
    dead_letter_topic: str = ""


class SubscriptionResponseStatus(str, enum.Enum):
    """How the sidecar should treat a delivered message."""

    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    DROP = "DROP"


@dataclass
class SubscriptionResponse:
    """Response hint from subscriber to the sidecar."""

    status: SubscriptionResponseStatus


@dataclass
class JobEvent:
    """A triggered scheduled job."""

    job_type: str = ""
    data: bytes = b""


@dataclass
class Job:
    """A serialized job payload."""

    type_url: str = ""
    value: str = ""


ServiceInvocationHandler = Callable[[InvocationEvent], Optional[Content]]
TopicEventHandler = Callable[[TopicEvent], Optional[SubscriptionResponseStatus]]
BindingInvocationHandler = Callable[[BindingEvent], Optional[bytes]]
JobEventHandler = Callable[[JobEvent], None]
HealthCheckHandler = Callable[[], None]


class TopicEventSubscriber(abc.ABC):
    """Receives topic events.

    ``handle`` returns the status to report. Raising an exception signals a
    failure that should be retried.
    """

    @abc.abstractmethod
    def handle(self, event: TopicEvent) -> SubscriptionResponseStatus:
        """Process one event and return its status."""


@dataclass(frozen=True)
class HandlerSubscriber(TopicEventSubscriber):
    """Adapts a plain handler function to the subscriber interface."""

    handler: TopicEventHandler

    def handle(self, event: TopicEvent) -> SubscriptionResponseStatus:
        result = self.handler(event)
        if result is None:
            return SubscriptionResponseStatus.SUCCESS
        return SubscriptionResponseStatus(result)


def as_subscriber(
    handler: Union[TopicEventSubscriber, TopicEventHandler, None],
) -> TopicEventSubscriber:
    """Return ``handler`` as a subscriber, wrapping plain callables."""
    if handler is None:
        raise ValueError("topic handler required")
    if isinstance(handler, TopicEventSubscriber):
        return handler
    if callable(handler):
        return HandlerSubscriber(handler)
    raise TypeError(f"not a topic handler: {handler!r}")


class Service(abc.ABC):
    """A callback service the sidecar talks to."""

    @abc.abstractmethod
    def add_health_check_handler(self, name: str, fn: HealthCheckHandler) -> None:
        """Set the application health check handler."""

    @abc.abstractmethod
    def add_service_invocation_handler(
        self, name: str, fn: ServiceInvocationHandler
    ) -> None:
        """Register a service invocation handler under ``name``."""

    @abc.abstractmethod
    def add_topic_event_handler(
        self, sub: Subscription, fn: TopicEventHandler
    ) -> None:
        """Register a handler function for a topic subscription."""

    @abc.abstractmethod
    def add_topic_event_subscriber(
        self, sub: Subscription, subscriber: TopicEventSubscriber
    ) -> None:
        """Register a subscriber for a topic subscription."""

    @abc.abstractmethod
    def add_binding_invocation_handler(
        self, name: str, fn: BindingInvocationHandler
    ) -> None:
        """Register an input binding handler under ``name``."""

    @abc.abstractmethod
    def add_job_event_handler(self, name: str, fn: JobEventHandler) -> None:
        """Register a scheduled job handler under ``name``."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start serving."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop a started service."""

    @abc.abstractmethod
    def graceful_stop(self) -> None:
        """Stop a started service, letting pending work finish."""