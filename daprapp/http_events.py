"""Parsing of CloudEvents envelopes delivered over HTTP."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

PUBSUB_HANDLER_SUCCESS_STATUS_CODE = 200
PUBSUB_HANDLER_RETRY_STATUS_CODE = 500
PUBSUB_HANDLER_DROP_STATUS_CODE = 303
HEALTHZ_ROUTE = "healthz"

_METADATA_PREFIX = "metadata."

_STRING_FIELDS = {
    "id": "id",
    "specversion": "spec_version",
    "type": "type",
    "source": "source",
    "datacontenttype": "data_content_type",
    "data_base64": "data_base64",
    "subject": "subject",
    "topic": "topic",
    "pubsubname": "pubsub_name",
    "traceid": "trace_id",
    "traceparent": "trace_parent",
}


def _b64decode(text: str) -> bytes:
    cleaned = text.replace("\r", "").replace("\n", "")
    return base64.b64decode(cleaned, validate=True)


def _try_json(data: Union[str, bytes]) -> tuple[bool, Any]:
    try:
        return True, json.loads(data)
    except ValueError:
        return False, None


@dataclass
class CloudEventEnvelope:
    """A topic event as posted by the sidecar; ``data`` holds raw JSON."""

    id: str = ""
    spec_version: str = ""
    type: str = ""
    source: str = ""
    data_content_type: str = ""
    data: Optional[bytes] = None
    data_base64: str = ""
    subject: str = ""
    topic: str = ""
    pubsub_name: str = ""
    trace_id: str = ""
    trace_parent: str = ""

    @classmethod
    def from_json(cls, body: Union[str, bytes]) -> "CloudEventEnvelope":
        """Parse an envelope; raises ValueError on malformed input."""
        parsed = json.loads(body)
        envelope = cls()
        if parsed is None:
            return envelope
        if not isinstance(parsed, dict):
            raise ValueError("cloud event must be a JSON object")
        for key, value in parsed.items():
            name = key.lower()
            if name == "data":
                envelope.data = json.dumps(
                    value, separators=(",", ":"), ensure_ascii=False
                ).encode("utf-8")
                continue
            attr = _STRING_FIELDS.get(name)
            if attr is None or value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"cloud event field {key!r} must be a string")
            setattr(envelope, attr, value)
        return envelope

    def get_data(self) -> tuple[Any, bytes]:
        """Return the decoded event data and its raw bytes."""
        if self.data:
            raw = self.data
            data: Any = raw
            ok, value = _try_json(raw)
            if ok:
                data = value
                if isinstance(value, str):
                    ok, nested = _try_json(value)
                    if ok:
                        data = nested
                    else:
                        try:
                            decoded = _b64decode(value)
                        except (binascii.Error, ValueError):
                            decoded = None
                        if decoded is not None:
                            ok, from_b64 = _try_json(decoded)
                            if ok:
                                data = from_b64
            return data, raw
        if self.data_base64:
            try:
                raw = _b64decode(self.data_base64)
            except (binascii.Error, ValueError):
                return None, b""
            data = raw
            if self.data_content_type == "application/json":
                ok, value = _try_json(raw)
                if ok:
                    data = value
            return data, raw
        return None, b""


def metadata_from_headers(
    headers: Union[Mapping[str, Any], Iterable[tuple[str, Any]], None],
) -> dict[str, str]:
    """Extract custom ``metadata.``-prefixed entries from request headers."""
    if headers is None:
        return {}
    items = headers.items() if hasattr(headers, "items") else headers
    result: dict[str, str] = {}
    for key, value in items:
        if not key.lower().startswith(_METADATA_PREFIX):
            continue
        if isinstance(value, (list, tuple)):
            if not value:
                continue
            value = value[0]
        result.setdefault(key[len(_METADATA_PREFIX):], value)
    return result