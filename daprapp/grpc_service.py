"""gRPC callback service the sidecar calls into."""

from __future__ import annotations

import base64
import dataclasses
import enum
import json
import os
import threading
from collections.abc import Iterable, Mapping
from concurrent import futures
from typing import Any, Callable, Optional, Union

import grpc

from daprapp.common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    BindingEvent,
    BindingInvocationHandler,
    HealthCheckHandler,
    InvocationEvent,
    JobEvent,
    JobEventHandler,
    Service,
    ServiceInvocationHandler,
    Subscription,
    TopicEvent,
    TopicEventHandler,
    TopicEventSubscriber,
)
from daprapp.grpc_events import (
    BindingEventRequest,
    BindingEventResponse,
    HTTPExtension,
    InvokeRequest,
    InvokeResponse,
    JobEventRequest,
    ListedSubscription,
    TopicEventRequest,
    TopicEventResponse,
    TopicEventStatus,
    decode_event_data,
    metadata_from_context,
)
from daprapp.registrar import TopicRegistrar
from daprapp.subscription import TopicRoutes

APP_CALLBACK_SERVICE = "dapr.proto.runtime.v1.AppCallback"
APP_CALLBACK_ALPHA_SERVICE = "dapr.proto.runtime.v1.AppCallbackAlpha"
APP_CALLBACK_HEALTH_CHECK_SERVICE = "dapr.proto.runtime.v1.AppCallbackHealthCheck"

_GRACEFUL_STOP_SECONDS = 30.0
_MAX_WORKERS = 10

Metadata = Union[Mapping[str, Any], Iterable[tuple[str, Any]], None]


class TopicEventFailed(Exception):
    """A topic event could not be handled; ``status`` tells the sidecar what to do."""

    def __init__(self, status: TopicEventStatus, message: str) -> None:
        super().__init__(message)
        self.status = status

    @property
    def response(self) -> TopicEventResponse:
        """The response that accompanies this failure."""
        return TopicEventResponse(status=self.status)


def _metadata_values(metadata: Metadata) -> dict[str, list[str]]:
    values: dict[str, list[str]] = {}
    if metadata is None:
        return values
    items = metadata.items() if isinstance(metadata, Mapping) else metadata
    for key, value in items:
        bucket = values.setdefault(key.lower(), [])
        if isinstance(value, (list, tuple)):
            bucket.extend(value)
        else:
            bucket.append(value)
    return values


def _plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.name: _plain(getattr(value, f.name))
            for f in dataclasses.fields(value)
            if not f.name.startswith("_")
        }
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _encode(message: Any) -> bytes:
    return json.dumps(_plain(message)).encode("utf-8")


def _load(raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _bytes(value: Any) -> bytes:
    return base64.b64decode(value) if isinstance(value, str) else b""


def _decode_empty(raw: bytes) -> None:
    return None


def _decode_invoke(raw: bytes) -> InvokeRequest:
    fields = _load(raw)
    extension = fields.get("http_extension")
    data = fields.get("data")
    return InvokeRequest(
        method=fields.get("method", ""),
        data=_bytes(data) if data is not None else None,
        data_type_url=fields.get("data_type_url", ""),
        content_type=fields.get("content_type", ""),
        http_extension=(
            HTTPExtension(
                verb=extension.get("verb", "NONE"),
                querystring=extension.get("querystring", ""),
            )
            if isinstance(extension, dict)
            else None
        ),
    )


def _decode_binding(raw: bytes) -> BindingEventRequest:
    fields = _load(raw)
    return BindingEventRequest(
        name=fields.get("name", ""),
        data=_bytes(fields.get("data")),
        metadata=dict(fields.get("metadata") or {}),
    )


def _decode_job(raw: bytes) -> JobEventRequest:
    fields = _load(raw)
    return JobEventRequest(
        name=fields.get("name", ""),
        method=fields.get("method", ""),
        data=_bytes(fields.get("data")),
    )


def _decode_topic(raw: bytes) -> TopicEventRequest:
    fields = _load(raw)
    return TopicEventRequest(
        id=fields.get("id", ""),
        source=fields.get("source", ""),
        type=fields.get("type", ""),
        spec_version=fields.get("spec_version", ""),
        data_content_type=fields.get("data_content_type", ""),
        data=_bytes(fields.get("data")),
        topic=fields.get("topic", ""),
        pubsub_name=fields.get("pubsub_name", ""),
        path=fields.get("path", ""),
    )


def _guarded(behaviour: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    def call(request: Any, context: Any) -> Any:
        try:
            return behaviour(request, context)
        except Exception as exc:  # reported to the caller as an RPC error
            context.abort(grpc.StatusCode.UNKNOWN, str(exc))

    return call


def _unary(behaviour: Callable[[Any, Any], Any], decode: Callable[[bytes], Any]):
    return grpc.unary_unary_rpc_method_handler(
        _guarded(behaviour),
        request_deserializer=decode,
        response_serializer=_encode,
    )


class Server(Service):
    """Callback service answering the sidecar over gRPC."""

    def __init__(
        self,
        address: Optional[str] = None,
        grpc_server: Optional[grpc.Server] = None,
        *,
        options: Optional[list[tuple[str, Any]]] = None,
    ) -> None:
        self._invoke_handlers: dict[str, ServiceInvocationHandler] = {}
        self._topic_registrar = TopicRegistrar()
        self._binding_handlers: dict[str, BindingInvocationHandler] = {}
        self._job_event_handlers: dict[str, JobEventHandler] = {}
        self._health_check_handler: Optional[HealthCheckHandler] = None
        self._auth_token = os.environ.get(APP_API_TOKEN_ENV_VAR, "")
        self._lock = threading.Lock()
        self._started = False
        self.port: Optional[int] = None

        if grpc_server is None:
            grpc_server = grpc.server(
                futures.ThreadPoolExecutor(max_workers=_MAX_WORKERS),
                options=options,
            )
        grpc_server.add_generic_rpc_handlers(self._generic_handlers())
        self._grpc_server: Optional[grpc.Server] = grpc_server

        if address:
            try:
                port = grpc_server.add_insecure_port(address)
            except RuntimeError as exc:
                raise OSError(f"failed to TCP listen on {address}: {exc}") from exc
            if not port:
                raise OSError(f"failed to TCP listen on {address}")
            self.port = port

    @property
    def grpc_server(self) -> Optional[grpc.Server]:
        """The managed gRPC server; None once stopped."""
        return self._grpc_server

    def _generic_handlers(self) -> tuple[grpc.GenericRpcHandler, ...]:
        callback = {
            "OnInvoke": _unary(
                lambda req, ctx: self.on_invoke(req, ctx.invocation_metadata()),
                _decode_invoke,
            ),
            "ListTopicSubscriptions": _unary(
                lambda req, ctx: {"subscriptions": self.list_topic_subscriptions()},
                _decode_empty,
            ),
            "OnTopicEvent": _unary(
                lambda req, ctx: self.on_topic_event(req, ctx.invocation_metadata()),
                _decode_topic,
            ),
            "ListInputBindings": _unary(
                lambda req, ctx: {"bindings": self.list_input_bindings()},
                _decode_empty,
            ),
            "OnBindingEvent": _unary(
                lambda req, ctx: self.on_binding_event(req), _decode_binding
            ),
        }
        alpha = {
            "OnJobEventAlpha1": _unary(
                lambda req, ctx: self.on_job_event(req) or {}, _decode_job
            ),
        }
        health = {
            "HealthCheck": _unary(
                lambda req, ctx: self.health_check() or {}, _decode_empty
            ),
        }
        return (
            grpc.method_handlers_generic_handler(APP_CALLBACK_SERVICE, callback),
            grpc.method_handlers_generic_handler(APP_CALLBACK_ALPHA_SERVICE, alpha),
            grpc.method_handlers_generic_handler(
                APP_CALLBACK_HEALTH_CHECK_SERVICE, health
            ),
        )

    # bindings

    def add_binding_invocation_handler(
        self, name: str, fn: BindingInvocationHandler
    ) -> None:
        """Register an input binding handler under ``name``."""
        if not name:
            raise ValueError("binding name required")
        if fn is None:
            raise ValueError("binding handler required")
        self._binding_handlers[name] = fn

    def list_input_bindings(self) -> list[str]:
        """Names of the bindings the app wants to be invoked by."""
        return list(self._binding_handlers)

    def on_binding_event(
        self, request: Optional[BindingEventRequest]
    ) -> BindingEventResponse:
        """Dispatch an input binding event to its handler."""
        if request is None:
            raise ValueError("nil binding event request")
        fn = self._binding_handlers.get(request.name)
        if fn is None:
            raise LookupError(f"binding not registered: {request.name}")
        event = BindingEvent(data=request.data, metadata=dict(request.metadata))
        try:
            data = fn(event)
        except Exception as exc:
            raise RuntimeError(
                f"error executing {request.name} binding: {exc}"
            ) from exc
        return BindingEventResponse(data=data)

    # health

    def add_health_check_handler(self, name: str, fn: HealthCheckHandler) -> None:
        """Set the health check handler; ``name`` is ignored over gRPC."""
        if fn is None:
            raise ValueError("health check handler required")
        self._health_check_handler = fn

    def health_check(self) -> None:
        """Run the health check handler; raises when unhealthy."""
        if self._health_check_handler is None:
            raise LookupError("health check handler not registered")
        self._health_check_handler()

    # invocation

    def add_service_invocation_handler(
        self, method: str, fn: ServiceInvocationHandler
    ) -> None:
        """Register a service invocation handler for ``method``."""
        if method in ("", "/"):
            raise ValueError("service name required")
        method = method.removeprefix("/")
        if fn is None:
            raise ValueError("invocation handler required")
        self._invoke_handlers[method] = fn

    def on_invoke(
        self, request: Optional[InvokeRequest], metadata: Metadata = None
    ) -> InvokeResponse:
        """Dispatch a service invocation, checking the app token if set."""
        if request is None:
            raise ValueError("nil invoke request")
        values = _metadata_values(metadata)
        if self._auth_token:
            if metadata is None:
                raise PermissionError("authentication failed")
            tokens = values.get(API_TOKEN_KEY)
            if not tokens:
                raise PermissionError("authentication failed. app token key not exist")
            if tokens[0] != self._auth_token:
                raise PermissionError("authentication failed: app token mismatch")

        fn = self._invoke_handlers.get(request.method)
        if fn is None:
            raise LookupError(f"method not registered: {request.method}")

        event = InvocationEvent(content_type=request.content_type, metadata=values)
        if request.data is not None:
            event.data = request.data
            event.data_type_url = request.data_type_url
        if request.http_extension is not None:
            event.verb = request.http_extension.verb
            event.query_string = request.http_extension.querystring

        content = fn(event)
        if content is None:
            return InvokeResponse()
        return InvokeResponse(
            content_type=content.content_type,
            data=content.data,
            data_type_url=content.data_type_url,
        )

    # jobs

    def add_job_event_handler(self, name: str, fn: JobEventHandler) -> None:
        """Register a scheduled job handler under ``name``."""
        if not name:
            raise ValueError("job event name cannot be empty")
        if fn is None:
            raise ValueError("job event handler not supplied")
        self._job_event_handlers[name] = fn

    def on_job_event(self, request: JobEventRequest) -> None:
        """Dispatch a triggered job to its handler."""
        prefix = "job/"
        if request.method.startswith(prefix):
            job_type = request.method[len(prefix):]
        elif request.name:
            job_type = request.name
        else:
            raise ValueError("unsupported invocation")
        fn = self._job_event_handlers.get(job_type)
        if fn is None:
            raise LookupError("job event handler not found")
        try:
            fn(JobEvent(job_type=job_type, data=request.data))
        except Exception as exc:
            raise RuntimeError(
                f"error executing {request.name} binding: {exc}"
            ) from exc

    # topics

    def add_topic_event_handler(self, sub: Subscription, fn: TopicEventHandler) -> None:
        """Register a handler function for a topic subscription."""
        if fn is None:
            raise ValueError("topic handler required")
        self.add_topic_event_subscriber(sub, fn)

    def add_topic_event_subscriber(
        self,
        sub: Subscription,
        subscriber: Union[TopicEventSubscriber, TopicEventHandler],
    ) -> None:
        """Register a subscriber for a topic subscription."""
        if sub is None:
            raise ValueError("subscription required")
        self._topic_registrar.add_subscription(sub, subscriber)

    def list_topic_subscriptions(self) -> list[ListedSubscription]:
        """The subscriptions the app wants the sidecar to deliver."""
        listed = []
        for registration in self._topic_registrar.values():
            sub = registration.subscription
            routes = None
            if sub.routes is not None:
                routes = TopicRoutes(
                    rules=list(sub.routes.rules), default=sub.routes.default
                )
            listed.append(
                ListedSubscription(
                    pubsub_name=sub.pubsub_name,
                    topic=sub.topic,
                    metadata=sub.metadata,
                    routes=routes,
                    dead_letter_topic=sub.dead_letter_topic,
                )
            )
        return listed

    def on_topic_event(
        self, request: Optional[TopicEventRequest], metadata: Metadata = None
    ) -> TopicEventResponse:
        """Dispatch a published message to the matching subscriber."""
        if request is None or not request.topic or not request.pubsub_name:
            raise TopicEventFailed(
                TopicEventStatus.DROP, "pub/sub and topic names required"
            )
        registration = self._topic_registrar.get(
            f"{request.pubsub_name}-{request.topic}"
        ) or self._topic_registrar.get(request.pubsub_name)
        if registration is None:
            raise TopicEventFailed(
                TopicEventStatus.RETRY,
                "pub/sub and topic combination not configured: "
                f"{request.pubsub_name}/{request.topic}",
            )

        event = TopicEvent(
            id=request.id,
            source=request.source,
            type=request.type,
            spec_version=request.spec_version,
            data_content_type=request.data_content_type,
            data=decode_event_data(request.data, request.data_content_type),
            raw_data=request.data,
            topic=request.topic,
            pubsub_name=request.pubsub_name,
            metadata=metadata_from_context(metadata),
        )
        handler = registration.default_handler
        if request.path and request.path in registration.route_handlers:
            handler = registration.route_handlers[request.path]
        if handler is None:
            raise TopicEventFailed(
                TopicEventStatus.RETRY,
                f"route {request.path} for pub/sub and topic combination not "
                f"configured: {request.pubsub_name}/{request.topic}",
            )
        try:
            status = handler.handle(event)
        except Exception as exc:
            raise TopicEventFailed(TopicEventStatus.RETRY, str(exc)) from exc
        return TopicEventResponse(status=TopicEventStatus[status.name])

    # lifecycle

    def start(self) -> None:
        """Serve until stopped. A server can be started only once."""
        with self._lock:
            if self._started:
                raise RuntimeError("a gRPC server can only be started once")
            self._started = True
            server = self._grpc_server
        if server is None:
            raise RuntimeError("server has been stopped")
        server.start()
        server.wait_for_termination()

    def _shutdown(self, grace: Optional[float]) -> None:
        with self._lock:
            if not self._started:
                return
            server, self._grpc_server = self._grpc_server, None
        if server is not None:
            server.stop(grace).wait()

    def stop(self) -> None:
        """Stop a started server immediately."""
        self._shutdown(None)

    def graceful_stop(self) -> None:
        """Stop a started server, letting in-flight calls finish."""
        self._shutdown(_GRACEFUL_STOP_SECONDS)


def new_service(address: str) -> Server:
    """Create a server listening on ``address``."""
    if not address:
        raise ValueError("empty address")
    return Server(address)