# daprapp

The application side of a Dapr sidecar: register handlers for pub/sub
topics, service invocation, input bindings, scheduled jobs and health
checks, then serve them over HTTP as a WSGI application, or dispatch them
through a gRPC callback server.

## Installation

```
pip install daprapp
```

For running the tests: `pip install daprapp[test]`.

## Handlers

All handler types live in `daprapp.common`.

- Topic handler: takes a `TopicEvent` and returns `None` (success) or a
  `SubscriptionResponseStatus` (`SUCCESS`, `RETRY`, `DROP`). Raising an
  exception reports `RETRY`. A class deriving from `TopicEventSubscriber`
  with a `handle(event)` method may be registered instead of a function;
  `as_subscriber` wraps a plain function in a `HandlerSubscriber`.
- Service invocation handler: takes an `InvocationEvent` (`data`,
  `content_type`, `data_type_url`, `verb`, `query_string`, and `metadata`
  holding the request headers or call metadata under lower-case keys) and
  returns a `Content` or `None`.
- Binding handler: takes a `BindingEvent` (`data`, `metadata`) and returns
  bytes or `None`.
- Job handler: takes a `JobEvent` (`job_type`, `data`).
- Health check handler: takes no arguments and raises when unhealthy.

`TopicEvent.struct()` decodes the event's raw payload as JSON.

## HTTP service

`daprapp.http_service.Server` is a WSGI application. Register handlers,
then call `start()` to serve on the server's address with werkzeug, or
mount the instance in any WSGI host (call `register_base_handler()` first
in that case).

```python
from daprapp.common import Content, Subscription, SubscriptionResponseStatus
from daprapp.http_service import new_service

service = new_service(":8080")

def on_event(event):
    print(event.pubsub_name, event.topic, event.data)
    return SubscriptionResponseStatus.SUCCESS

def echo(event):
    return Content(data=event.data, content_type=event.content_type)

service.add_topic_event_handler(
    Subscription(pubsub_name="messages", topic="orders", route="/orders"),
    on_event,
)
service.add_service_invocation_handler("/echo", echo)
service.add_binding_invocation_handler("/run", lambda event: None)
service.add_health_check_handler("/health", lambda: None)
service.start()
```

Behaviour of the routes:

- `GET /dapr/subscribe` lists the registered subscriptions as JSON.
- `GET /healthz` answers `200`, unless a handler was registered on that
  route.
- A health check route answers `204`, or `500` with the error text.
- A topic route decodes the CloudEvents envelope (JSON `data`, JSON given
  as an escaped or base64 string, or `data_base64`), passes headers named
  `metadata.<key>` on as `TopicEvent.metadata`, and answers `200` with
  `{"status": "SUCCESS" | "RETRY" | "DROP"}`. An empty or malformed body
  is answered with `303`.
- A binding route answers the handler's bytes as `application/json`, or
  `{}` when the handler returns `None`; a raised error gives `500`.
- An invocation route answers the returned content with its content type;
  a raised error gives `500`.
- Every handler route answers `OPTIONS` with the CORS headers written by
  `set_options`.

`stop()` (and `graceful_stop()`) shuts the server down; `start()` then
ends with, or on a later call raises, `ServerClosedError`.

## gRPC callback server

`daprapp.grpc_service.Server` carries the same handlers and exposes the
callback operations as plain methods taking request objects from
`daprapp.grpc_events`: `on_invoke`, `on_topic_event`, `on_binding_event`,
`on_job_event`, `health_check`, `list_topic_subscriptions` and
`list_input_bindings`. `new_service(address)` creates one bound to an
address; `start()` serves until `stop()` or `graceful_stop()`, and may be
called only once.

```python
from daprapp.common import Subscription
from daprapp.grpc_events import TopicEventRequest
from daprapp.grpc_service import TopicEventFailed, new_service

server = new_service("localhost:50001")
server.add_topic_event_handler(
    Subscription(pubsub_name="messages", topic="orders"),
    lambda event: print(event.data),
)
try:
    response = server.on_topic_event(
        TopicEventRequest(pubsub_name="messages", topic="orders",
                          data=b'{"id": 1}', data_content_type="application/json"),
        {"metadata.tenant": "a"},
    )
    print(response.status)
except TopicEventFailed as failure:
    print("failed:", failure.status, failure)
```

Topic payloads are decoded by `decode_event_data`: JSON and `+json` media
types become Python values, `text/plain` becomes a string, anything else
stays as bytes. A failing topic event raises `TopicEventFailed`, whose
`status` is `RETRY` or `DROP`; a handler returning `DROP` gives a `DROP`
response. Job events are matched by a `job/<name>` method or by the
request name.

## Routing rules

Several subscriptions to the same pub/sub and topic share one entry: give
each extra subscription a `match` expression and an optional `priority`.
Rules are kept ordered by priority, a positive priority may be used only
once, and a subscription without `match` becomes the default route. With
`disable_topic_validation`, a subscription receives every topic of its
pub/sub component.

## App API token

When the environment variable `APP_API_TOKEN` is set when the server is
created, service invocation requests must carry the same value in the
`dapr-api-token` header or metadata key. Over HTTP a missing or wrong
token is answered with `203`; the gRPC server raises `PermissionError`.

## What it does not do

- The gRPC callback server encodes its messages as JSON over gRPC generic
  handlers, not in the sidecar's protobuf message format, so it does not
  talk to a sidecar directly; use its methods from your own transport or
  in tests.
- The HTTP service does not deliver scheduled job events:
  `add_job_event_handler` validates its arguments and then raises
  `RuntimeError`.
- There is no actor hosting and no client for calling the sidecar's APIs
  (state, publishing, invocation of other services).