"""Internal representation of a topic subscription and its routes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class TopicRule:
    """A single routing rule."""

    match: str
    path: str
    priority: int = field(default=0, compare=False)

    def _to_dict(self) -> dict[str, str]:
        return {"match": self.match, "path": self.path}


@dataclass
class TopicRoutes:
    """The default route plus routing rules ordered by priority."""

    rules: list[TopicRule] = field(default_factory=list)
    default: str = ""
    _priorities: set[int] = field(default_factory=set, compare=False, repr=False)

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.rules:
            out["rules"] = [rule._to_dict() for rule in self.rules]
        if self.default:
            out["default"] = self.default
        return out


@dataclass
class TopicSubscription:
    """A subscription as reported to the sidecar."""

    pubsub_name: str
    topic: str
    dead_letter_topic: str = ""
    route: str = ""
    routes: Optional[TopicRoutes] = None
    metadata: Optional[dict[str, str]] = None

    def set_metadata(self, metadata: Optional[dict[str, str]]) -> None:
        """Set the metadata unless it is already set."""
        if self.metadata is not None:
            raise ValueError(
                f"subscription for topic {self.topic} on pubsub "
                f"{self.pubsub_name} already has metadata set"
            )
        self.metadata = metadata

    def set_default_route(self, path: str) -> None:
        """Set the default route unless one is already set."""
        current = self.route if self.routes is None else self.routes.default
        if current:
            raise ValueError(
                f"subscription for topic {self.topic} on pubsub "
                f"{self.pubsub_name} already has route {current}"
            )
        if self.routes is None:
            self.route = path
        else:
            self.routes.default = path

    def add_routing_rule(self, path: str, match: str, priority: int) -> None:
        """Add a routing rule; positive priorities must be unique."""
        if not path:
            raise ValueError("path is required for routing rules")
        if self.routes is None:
            self.routes = TopicRoutes(default=self.route)
            self.route = ""
        if priority > 0 and priority in self.routes._priorities:
            raise ValueError(
                f"subscription for topic {self.topic} on pubsub "
                f"{self.pubsub_name} already has a routing rule with priority {priority}"
            )
        self.routes.rules.append(TopicRule(match=match, path=path, priority=priority))
        self.routes.rules.sort(key=lambda rule: rule.priority)
        if priority > 0:
            self.routes._priorities.add(priority)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of this subscription."""
        out: dict[str, Any] = {"pubsubname": self.pubsub_name, "topic": self.topic}
        if self.route:
            out["route"] = self.route
        if self.routes is not None:
            out["routes"] = self.routes._to_dict()
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        out["deadLetterTopic"] = self.dead_letter_topic
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TopicSubscription":
        """Build a subscription from its JSON-ready form."""
        routes = None
        raw_routes = data.get("routes")
        if raw_routes is not None:
            routes = TopicRoutes(
                rules=[
                    TopicRule(match=rule.get("match", ""), path=rule.get("path", ""))
                    for rule in raw_routes.get("rules") or []
                ],
                default=raw_routes.get("default", ""),
            )
        metadata = data.get("metadata")
        return cls(
            pubsub_name=data.get("pubsubname", ""),
            topic=data.get("topic", ""),
            dead_letter_topic=data.get("deadLetterTopic", ""),
            route=data.get("route", ""),
            routes=routes,
            metadata=dict(metadata) if metadata is not None else None,
        )