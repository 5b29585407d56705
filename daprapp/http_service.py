"""HTTP callback service the sidecar calls into, served as a WSGI app."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import MutableMapping
from typing import Any, Callable, Iterable, Optional, Union

from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from daprapp.common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    BindingEvent,
    BindingInvocationHandler,
    HealthCheckHandler,
    InvocationEvent,
    JobEventHandler,
    Service,
    ServiceInvocationHandler,
    Subscription,
    SubscriptionResponseStatus,
    TopicEvent,
    TopicEventHandler,
    TopicEventSubscriber,
    as_subscriber,
)
from daprapp.http_events import (
    HEALTHZ_ROUTE,
    PUBSUB_HANDLER_DROP_STATUS_CODE,
    CloudEventEnvelope,
    metadata_from_headers,
)
from daprapp.registrar import TopicRegistrar

_RouteHandler = Callable[[Request], Response]


class ServerClosedError(Exception):
    """Raised by ``start`` once the server has been stopped."""

    def __init__(self, message: str = "http: Server closed") -> None:
        super().__init__(message)


def set_options(headers: MutableMapping[str, str]) -> None:
    """Set the CORS and Allow headers answered to OPTIONS requests."""
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = "authorization, origin, content-type, accept"
    headers["Allow"] = "POST,OPTIONS"


def _canonical(key: str) -> str:
    parts = key.lower().split("-")
    return "-".join(part[:1].upper() + part[1:] for part in parts)


def _request_headers(environ: dict[str, Any]) -> list[tuple[str, str]]:
    headers = []
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            name = key[5:].replace("_", "-")
        elif key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            if not value:
                continue
            name = key.replace("_", "-")
        else:
            continue
        headers.append((_canonical(name), str(value)))
    return headers


def _error(message: str, status: int) -> Response:
    response = Response(message + "\n", status=status)
    response.headers["Content-Type"] = "text/plain; charset=utf-8"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


def _json_body(value: Any) -> str:
    return json.dumps(value) + "\n"


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, ""
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port) if port else 80


def _with_options(handler: _RouteHandler) -> _RouteHandler:
    def wrapped(request: Request) -> Response:
        if request.method == "OPTIONS":
            response = Response(status=200)
            set_options(response.headers)
            return response
        return handler(request)

    return wrapped


class Server(Service):
    """HTTP callback service; an instance is a WSGI application."""

    def __init__(self, address: str = "") -> None:
        self.address = address
        self._routes: dict[str, dict[Optional[str], _RouteHandler]] = {}
        self._topic_registrar = TopicRegistrar()
        self._auth_token = os.environ.get(APP_API_TOKEN_ENV_VAR, "")
        self._lock = threading.Lock()
        self._closed = False
        self._http_server: Any = None
        self.port: Optional[int] = None

    # routing

    def _handle(
        self, route: str, handler: _RouteHandler, method: Optional[str] = None
    ) -> None:
        if not route.startswith("/"):
            raise ValueError(f"routing pattern must begin with '/' in '{route}'")
        self._routes.setdefault(route, {})[method] = handler

    def _dispatch(self, request: Request) -> Response:
        methods = self._routes.get(request.path)
        if methods is None:
            return _error("404 page not found", 404)
        handler = methods.get(request.method) or methods.get(None)
        if handler is None:
            return Response(status=405)
        return handler(request)

    def __call__(
        self, environ: dict[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        request = Request(environ)
        response = self._dispatch(request)
        return response(environ, start_response)

    # bindings

    def add_binding_invocation_handler(
        self, route: str, fn: BindingInvocationHandler
    ) -> None:
        """Serve an input binding handler at ``route``."""
        if not route:
            raise ValueError("binding route required")
        if fn is None:
            raise ValueError("binding handler required")
        if not route.startswith("/"):
            route = "/" + route

        def handler(request: Request) -> Response:
            content = request.get_data() or None
            meta = dict(_request_headers(request.environ))
            try:
                out = fn(BindingEvent(data=content, metadata=meta))
            except Exception as exc:
                return _error(str(exc), 500)
            if out is None:
                out = b"{}"
            response = Response(out, status=200)
            response.headers["Content-Type"] = "application/json"
            return response

        self._handle(route, _with_options(handler))

    # health

    def add_health_check_handler(self, route: str, fn: HealthCheckHandler) -> None:
        """Serve a health check handler at ``route``."""
        if fn is None:
            raise ValueError("health check handler required")
        if not route.startswith("/"):
            route = "/" + route

        def handler(request: Request) -> Response:
            try:
                fn()
            except Exception as exc:
                return _error(str(exc), 500)
            return Response(status=204)

        self._handle(route, _with_options(handler))

    # invocation

    def add_service_invocation_handler(
        self, route: str, fn: ServiceInvocationHandler
    ) -> None:
        """Serve a service invocation handler at ``route``."""
        if route in ("", "/"):
            raise ValueError("service route required")
        if fn is None:
            raise ValueError("invocation handler required")
        if not route.startswith("/"):
            route = "/" + route

        def handler(request: Request) -> Response:
            if self._auth_token:
                supplied = request.headers.get(API_TOKEN_KEY, "")
                if not supplied or supplied != self._auth_token:
                    return _error("authentication failed.", 203)
            metadata: dict[str, list[str]] = {}
            for key, value in _request_headers(request.environ):
                metadata.setdefault(key.lower(), []).append(value)
            event = InvocationEvent(
                data=request.get_data() or None,
                content_type=request.headers.get("Content-Type", ""),
                verb=request.method,
                query_string=request.environ.get("QUERY_STRING", ""),
                metadata=metadata,
            )
            try:
                out = fn(event)
            except Exception as exc:
                return _error(str(exc), 500)
            response = Response(status=200)
            if out is not None and out.data is not None:
                response.set_data(out.data)
                if out.content_type:
                    response.headers["Content-Type"] = out.content_type
            else:
                response.headers.pop("Content-Type", None)
            return response

        self._handle(route, _with_options(handler))

    # jobs

    def add_job_event_handler(self, name: str, fn: JobEventHandler) -> None:
        """Validate the arguments; job events are not delivered over HTTP."""
        if not name:
            raise ValueError("job event name required")
        if fn is None:
            raise ValueError("job event handler required")
        raise RuntimeError("scheduled job requests are not supported by the HTTP service")

    # topics

    def add_topic_event_handler(self, sub: Subscription, fn: TopicEventHandler) -> None:
        """Serve a handler function for a topic subscription."""
        if fn is None:
            raise ValueError("topic handler required")
        self.add_topic_event_subscriber(sub, fn)

    def add_topic_event_subscriber(
        self,
        sub: Subscription,
        subscriber: Union[TopicEventSubscriber, TopicEventHandler],
    ) -> None:
        """Serve a subscriber at the subscription's route."""
        if sub is None:
            raise ValueError("subscription required")
        if not sub.route:
            raise ValueError("handler route name")
        if not sub.route.startswith("/"):
            raise ValueError(f"routing pattern must begin with '/' in '{sub.route}'")
        self._topic_registrar.add_subscription(sub, subscriber)
        target = as_subscriber(subscriber)

        def handler(request: Request) -> Response:
            body = request.get_data()
            if not body:
                return _error("nil content", PUBSUB_HANDLER_DROP_STATUS_CODE)
            try:
                envelope = CloudEventEnvelope.from_json(body)
            except ValueError as exc:
                return _error(str(exc), PUBSUB_HANDLER_DROP_STATUS_CODE)

            if not envelope.pubsub_name:
                envelope.topic = sub.pubsub_name
            if not envelope.topic:
                envelope.topic = sub.topic

            data, raw_data = envelope.get_data()
            event = TopicEvent(
                id=envelope.id,
                spec_version=envelope.spec_version,
                type=envelope.type,
                source=envelope.source,
                data_content_type=envelope.data_content_type,
                data=data,
                raw_data=raw_data,
                data_base64=envelope.data_base64,
                subject=envelope.subject,
                pubsub_name=envelope.pubsub_name,
                topic=envelope.topic,
                metadata=metadata_from_headers(_request_headers(request.environ)),
                trace_id=envelope.trace_id,
                trace_parent=envelope.trace_parent,
            )
            try:
                status = target.handle(event)
            except Exception:
                status = SubscriptionResponseStatus.RETRY
            response = Response(_json_body({"status": status.value}), status=200)
            response.headers["Content-Type"] = "application/json"
            return response

        self._handle(sub.route, _with_options(handler))

    # base routes

    def register_base_handler(self) -> None:
        """Register the subscription listing and default health routes."""

        def subscribe(request: Request) -> Response:
            subs = [
                registration.subscription.to_dict()
                for registration in self._topic_registrar.values()
            ]
            response = Response(_json_body(subs), status=200)
            response.headers["Content-Type"] = "application/json"
            return response

        self._handle("/dapr/subscribe", subscribe)

        has_healthz = "/" + HEALTHZ_ROUTE in self._routes or HEALTHZ_ROUTE in self._routes
        if not has_healthz:
            self._handle(
                "/" + HEALTHZ_ROUTE, lambda request: Response(status=200), "GET"
            )

    # lifecycle

    def start(self) -> None:
        """Serve until stopped; always ends with ServerClosedError."""
        with self._lock:
            if self._closed:
                raise ServerClosedError()
            self.register_base_handler()
            host, port = _parse_address(self.address)
            server = make_server(host, port, self, threaded=True)
            self._http_server = server
            self.port = server.server_port
        server.serve_forever()
        raise ServerClosedError()

    def stop(self) -> None:
        """Stop the server; later calls to ``start`` fail."""
        with self._lock:
            self._closed = True
            server, self._http_server = self._http_server, None
        if server is not None:
            server.shutdown()
            server.server_close()

    def graceful_stop(self) -> None:
        """Same as ``stop``."""
        self.stop()


def new_service(address: str) -> Server:
    """Create an HTTP service that will listen on ``address``."""
    return Server(address)