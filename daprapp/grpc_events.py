"""Message types exchanged with the sidecar over gRPC, and event decoding."""

from __future__ import annotations

import enum
import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from daprapp.subscription import TopicRoutes

_NAME_CHARS = r"[!#$%&'*+\-.^_`{|}~0-9A-Za-z]+"
_MEDIA_TYPE = re.compile(rf"^{_NAME_CHARS}(?:/{_NAME_CHARS})?$")
_METADATA_PREFIX = "metadata."


@dataclass
class HTTPExtension:
    """HTTP details of an invocation that arrived over HTTP."""

    verb: str = "NONE"
    querystring: str = ""


@dataclass
class InvokeRequest:
    """A service invocation forwarded by the sidecar."""

    method: str = ""
    data: Optional[bytes] = None
    data_type_url: str = ""
    content_type: str = ""
    http_extension: Optional[HTTPExtension] = None


@dataclass
class InvokeResponse:
    """The reply to a service invocation."""

    content_type: str = ""
    data: Optional[bytes] = None
    data_type_url: str = ""


@dataclass
class BindingEventRequest:
    """An event fired by an input binding."""

    name: str = ""
    data: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class BindingEventResponse:
    """The reply to a binding event."""

    data: Optional[bytes] = None


@dataclass
class JobEventRequest:
    """A triggered scheduled job."""

    name: str = ""
    method: str = ""
    data: bytes = b""


@dataclass
class TopicEventRequest:
    """A message published to a subscribed topic."""

    id: str = ""
    source: str = ""
    type: str = ""
    spec_version: str = ""
    data_content_type: str = ""
    data: bytes = b""
    topic: str = ""
    pubsub_name: str = ""
    path: str = ""


class TopicEventStatus(enum.IntEnum):
    """Outcome reported back to the sidecar for a topic event."""

    SUCCESS = 0
    RETRY = 1
    DROP = 2


@dataclass
class TopicEventResponse:
    """The reply to a topic event."""

    status: TopicEventStatus = TopicEventStatus.SUCCESS


@dataclass
class ListedSubscription:
    """A subscription as listed to the sidecar."""

    pubsub_name: str
    topic: str
    metadata: Optional[dict[str, str]] = None
    routes: Optional[TopicRoutes] = None
    dead_letter_topic: str = ""


def _media_type(content_type: str) -> Optional[str]:
    head, _, params = content_type.partition(";")
    head = head.strip()
    if not _MEDIA_TYPE.match(head):
        return None
    for param in params.split(";"):
        param = param.strip()
        if param and "=" not in param:
            return None
    return head.lower()


def _try_json(data: bytes) -> tuple[bool, Any]:
    try:
        return True, json.loads(data)
    except ValueError:
        return False, None


def decode_event_data(data: bytes, content_type: str) -> Any:
    """Decode an event payload according to its content type.

    JSON media types become Python values, ``text/plain`` becomes a string,
    and anything else (or anything that fails to decode) stays as bytes.
    """
    if not data:
        return data
    media_type = _media_type(content_type or "")
    if media_type is None:
        return data
    if media_type == "text/plain":
        return data.decode("utf-8", errors="replace")
    if media_type == "application/json" or (
        media_type.startswith("application/") and media_type.endswith("+json")
    ):
        ok, value = _try_json(data)
        if ok:
            return value
    return data


def _pairs(
    metadata: Union[Mapping[str, Any], Iterable[tuple[str, Any]], None],
) -> Iterable[tuple[str, Any]]:
    if metadata is None:
        return ()
    if isinstance(metadata, Mapping):
        return metadata.items()
    return metadata


def metadata_from_context(
    metadata: Union[Mapping[str, Any], Iterable[tuple[str, Any]], None],
) -> dict[str, str]:
    """Extract custom ``metadata.``-prefixed entries from call metadata.

    Accepts a mapping of keys to a value or a list of values, or an iterable
    of ``(key, value)`` pairs. The first value of each key is kept.
    """
    result: dict[str, str] = {}
    for key, value in _pairs(metadata):
        key = key.lower()
        if not key.startswith(_METADATA_PREFIX):
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        result.setdefault(key[len(_METADATA_PREFIX):], value)
    return result