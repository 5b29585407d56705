import json
import threading
import time
import urllib.request

import pytest
from werkzeug.test import Client

from daprapp.common import (
    API_TOKEN_KEY,
    APP_API_TOKEN_ENV_VAR,
    Content,
    Subscription,
    SubscriptionResponseStatus,
)
from daprapp.http_service import Server, ServerClosedError, new_service, set_options
from daprapp.subscription import TopicSubscription


def _client(server):
    return Client(server)


# bindings


def test_binding_handler_without_handler():
    s = Server()
    with pytest.raises(ValueError):
        s.add_binding_invocation_handler("/", None)


def test_binding_handler_without_data():
    s = Server()
    seen = []

    def handler(event):
        seen.append(event.data)
        return None

    s.add_binding_invocation_handler("/", handler)
    resp = _client(s).post("/", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "{}"
    assert seen == [None]


def test_binding_handler_with_data():
    s = Server()
    s.add_binding_invocation_handler("/", lambda event: b"test")
    resp = _client(s).post(
        "/", data='{"name": "test"}', headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "test"


def test_binding_handler_errors():
    s = Server()
    with pytest.raises(ValueError):
        s.add_binding_invocation_handler("", lambda event: b"test")

    def failing(event):
        raise RuntimeError("intentional error")

    s.add_binding_invocation_handler("errors", failing)
    resp = _client(s).post(
        "/errors", data='{"name": "test"}', headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 500
    assert "intentional error" in resp.get_data(as_text=True)


def test_binding_metadata_from_headers():
    s = Server()
    seen = {}

    def handler(event):
        seen.update(event.metadata)
        return b"ok"

    s.add_binding_invocation_handler("/run", handler)
    resp = _client(s).post("/run", data="x", headers={"X-Custom": "v1"})
    assert resp.status_code == 200
    assert resp.get_data() == b"ok"
    assert seen["X-Custom"] == "v1"


# health


def test_health_check_handler_without_handler():
    s = Server()
    with pytest.raises(ValueError):
        s.add_health_check_handler("/", None)


def test_health_check_handler_ok():
    s = Server()
    s.add_health_check_handler("/", lambda: None)
    resp = _client(s).get("/", headers={"Content-Type": "application/json"})
    assert resp.status_code == 204


def test_health_check_handler_error():
    s = Server()

    def unhealthy():
        raise RuntimeError("app is unhealthy")

    s.add_health_check_handler("/", unhealthy)
    resp = _client(s).get("/")
    assert resp.status_code == 500


# invocation


def _echo(event):
    if event is None or event.data is None or not event.content_type:
        raise ValueError("nil input")
    return Content(
        data=event.data,
        content_type=event.content_type,
        data_type_url=event.data_type_url,
    )


def test_invocation_handler_without_handler():
    s = Server()
    with pytest.raises(ValueError):
        s.add_service_invocation_handler("/hello", None)
    with pytest.raises(ValueError):
        s.add_service_invocation_handler("/", None)


def test_invocation_handler_with_token(monkeypatch):
    monkeypatch.setenv(APP_API_TOKEN_ENV_VAR, "token")
    data = '{"name": "test", "data": hello}'
    s = Server()
    s.add_service_invocation_handler("/hello", _echo)
    client = _client(s)

    resp = client.post("/hello", data=data, headers={"Content-Type": "application/json"})
    assert resp.status_code == 203

    resp = client.post(
        "/hello",
        data=data,
        headers={"Content-Type": "application/json", API_TOKEN_KEY: "token"},
    )
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == data


def test_invocation_handler_with_data():
    data = '{"name": "test", "data": hello}'
    s = Server()
    s.add_service_invocation_handler("/hello", _echo)
    resp = _client(s).post(
        "/hello", data=data, headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == data
    assert resp.headers["Content-Type"] == "application/json"


def test_invocation_handler_without_input_data():
    s = Server()

    def handler(event):
        if event.data is not None:
            raise ValueError("nil input")
        return Content()

    s.add_service_invocation_handler("/hello", handler)
    resp = _client(s).post("/hello", headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == ""


def test_invocation_handler_with_invalid_route():
    s = Server()
    s.add_service_invocation_handler("no-slash", lambda event: None)
    with pytest.raises(ValueError):
        s.add_service_invocation_handler("", lambda event: None)
    s.add_service_invocation_handler("/a", lambda event: None)
    client = _client(s)
    assert client.post("/b").status_code == 404
    assert client.post("/no-slash").status_code == 200


def test_invocation_handler_with_error():
    s = Server()

    def failing(event):
        raise RuntimeError("intentional test error")

    s.add_service_invocation_handler("/error", failing)
    resp = _client(s).post("/error")
    assert resp.status_code == 500


def test_invocation_handler_with_customized_header():
    s = Server()

    def handler(event):
        body = json.loads(event.data)
        values = event.metadata.get("customized-header")
        if values:
            body["Customized-Header"] = values[0]
        return Content(data=json.dumps(body).encode(), content_type=event.content_type)

    s.add_service_invocation_handler("/hello", handler)
    resp = _client(s).post(
        "/hello",
        data='{"name": "test", "data": "hello"}',
        headers={"Content-Type": "application/json", "Customized-Header": "Value"},
    )
    assert resp.status_code == 200
    assert json.loads(resp.get_data())["Customized-Header"] == "Value"


def test_invocation_verb_and_query_string():
    s = Server()
    seen = []

    def handler(event):
        seen.append((event.verb, event.query_string))
        return None

    s.add_service_invocation_handler("/echo", handler)
    resp = _client(s).delete("/echo?k1=v1&k2=v2")
    assert resp.status_code == 200
    assert resp.get_data() == b""
    assert seen == [("DELETE", "k1=v1&k2=v2")]


def test_options_request_returns_cors_headers():
    s = Server()
    s.add_service_invocation_handler("/echo", lambda event: None)
    resp = _client(s).options("/echo")
    assert resp.status_code == 200
    assert resp.headers["Allow"] == "POST,OPTIONS"


# jobs


def test_job_event_handler():
    s = Server()
    with pytest.raises(ValueError):
        s.add_job_event_handler("", lambda event: None)
    with pytest.raises(ValueError):
        s.add_job_event_handler("job", None)
    with pytest.raises(RuntimeError):
        s.add_job_event_handler("job", lambda event: None)


# service lifecycle


def test_starting_stopped_service():
    s = new_service(":3333")
    s.stop()
    with pytest.raises(ServerClosedError) as info:
        s.start()
    assert str(info.value) == "http: Server closed"


def test_stopping_started_service():
    s = new_service("127.0.0.1:0")
    errors = []

    def run():
        try:
            s.start()
        except ServerClosedError as exc:
            errors.append(exc)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while s.port is None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert s.port is not None

    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    with opener.open(f"http://127.0.0.1:{s.port}/healthz", timeout=5) as resp:
        assert resp.status == 200

    s.stop()
    thread.join(5)
    assert not thread.is_alive()
    assert len(errors) == 1


def test_setting_options():
    headers = {}
    set_options(headers)
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert headers["Access-Control-Allow-Methods"] == "POST,OPTIONS"
    assert headers["Access-Control-Allow-Headers"] == "authorization, origin, content-type, accept"
    assert headers["Allow"] == "POST,OPTIONS"


# topics

_EVENT_WITH_B64_DATA = """{
    "specversion" : "1.0",
    "type" : "com.github.pull.create",
    "source" : "https://example.com/cloudevents/spec/pull",
    "subject" : "123",
    "id" : "A234-1234-1234",
    "time" : "2018-04-05T17:31:00Z",
    "comexampleextension1" : "value",
    "comexampleothervalue" : 5,
    "datacontenttype" : "application/json",
    "data" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ==",
    "traceid": "aaa",
    "traceparent": "bbb"
}"""


def _envelope(**fields):
    base = {
        "specversion": "1.0",
        "type": "com.github.pull.create",
        "source": "https://example.com/cloudevents/spec/pull",
        "subject": "123",
        "id": "A234-1234-1234",
        "time": "2018-04-05T17:31:00Z",
        "comexampleextension1": "value",
        "comexampleothervalue": 5,
    }
    base.update(fields)
    return json.dumps(base)


def _json_content_only(event):
    if event.data_content_type != "application/json":
        raise ValueError(f"invalid content type: {event.data_content_type}")
    return None


def _retry(event):
    raise RuntimeError("error to cause a retry")


def _post_event(server, route, data, headers=None):
    all_headers = {"Content-Type": "application/json"}
    all_headers.update(headers or {})
    return _client(server).post(route, data=data, headers=all_headers)


def test_event_nil_handler():
    s = Server()
    sub = Subscription(pubsub_name="messages", topic="test", route="/", metadata={})
    with pytest.raises(ValueError):
        s.add_topic_event_handler(sub, None)


def test_event_handler():
    s = Server()
    s.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/", metadata={}),
        _json_content_only,
    )
    s.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="errors", route="/errors", metadata={}),
        _retry,
    )
    s.add_topic_event_handler(
        Subscription(
            pubsub_name="messages",
            topic="test",
            route="/other",
            match='event.type == "other"',
            priority=1,
        ),
        _json_content_only,
    )
    s.register_base_handler()

    resp = _client(s).get("/dapr/subscribe", headers={"Accept": "application/json"})
    subs = [TopicSubscription.from_dict(item) for item in json.loads(resp.get_data())]
    subs.sort(key=lambda item: (item.pubsub_name, item.topic))
    assert len(subs) == 2
    assert (subs[0].pubsub_name, subs[0].topic) == ("messages", "errors")
    assert (subs[1].pubsub_name, subs[1].topic) == ("messages", "test")
    assert subs[1].route == ""
    assert subs[1].routes.default == "/"
    assert len(subs[1].routes.rules) == 1
    assert subs[1].routes.rules[0].match == 'event.type == "other"'
    assert subs[1].routes.rules[0].path == "/other"

    ok = _post_event(s, "/", _EVENT_WITH_B64_DATA)
    assert ok.status_code == 200
    assert json.loads(ok.get_data()) == {"status": "SUCCESS"}
    assert _post_event(s, "/", "").status_code == 303
    assert _post_event(s, "/", "not JSON").status_code == 303
    retried = _post_event(s, "/errors", _EVENT_WITH_B64_DATA)
    assert retried.status_code == 200
    assert json.loads(retried.get_data()) == {"status": "RETRY"}


def test_handler_status_drop_is_reported():
    s = Server()
    s.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/drop"),
        lambda event: SubscriptionResponseStatus.DROP,
    )
    resp = _post_event(s, "/drop", _EVENT_WITH_B64_DATA)
    assert json.loads(resp.get_data()) == {"status": "DROP"}


@pytest.mark.parametrize(
    "data, expected",
    [
        (
            _envelope(datacontenttype="application/json", data={"message": "hello"}),
            {"message": "hello"},
        ),
        (
            _envelope(
                datacontenttype="application/json", data="eyJtZXNzYWdlIjoiaGVsbG8ifQ=="
            ),
            {"message": "hello"},
        ),
        (
            _envelope(
                datacontenttype="application/json",
                data_base64="eyJtZXNzYWdlIjoiaGVsbG8ifQ==",
            ),
            {"message": "hello"},
        ),
        (
            _envelope(
                datacontenttype="application/octet-stream",
                data_base64="eyJtZXNzYWdlIjoiaGVsbG8ifQ==",
            ),
            b'{"message":"hello"}',
        ),
        (
            _envelope(datacontenttype="application/json", data='{"message":"hello"}'),
            {"message": "hello"},
        ),
    ],
    ids=[
        "json-nested",
        "json-base64-in-data",
        "json-base64-in-data_base64",
        "binary-base64-in-data_base64",
        "json-string-escaped",
    ],
)
def test_event_data_handling(data, expected):
    s = Server()
    received = []
    s.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/test", metadata={}),
        lambda event: received.append(event),
    )
    s.register_base_handler()
    resp = _post_event(s, "/test", data)
    assert resp.status_code == 200
    assert len(received) == 1
    assert received[0].data == expected


@pytest.mark.parametrize(
    "metadata, expected",
    [
        ({"metadata.key1": "value1"}, {"key1": "value1"}),
        (
            {"metadata.key1": "value1", "metadata.key2": "value2"},
            {"key1": "value1", "key2": "value2"},
        ),
        ({"metadata.key1": "value1", "key2": "value2"}, {"key1": "value1"}),
    ],
)
def test_event_metadata_handling(metadata, expected):
    s = Server()
    received = []
    s.add_topic_event_handler(
        Subscription(pubsub_name="messages", topic="test", route="/test", metadata={}),
        lambda event: received.append(event),
    )
    s.register_base_handler()
    body = _envelope(datacontenttype="application/json", data={"message": "hello"})
    resp = _post_event(s, "/test", body, metadata)
    assert resp.status_code == 200
    assert received[0].metadata == expected


def test_health_check_default_route():
    s = Server()
    s.register_base_handler()
    assert _client(s).get("/healthz").status_code == 200


def test_custom_health_check():
    s = Server()
    s.add_health_check_handler("/healthz", lambda: None)
    s.register_base_handler()
    assert _client(s).get("/healthz").status_code == 204


def test_custom_health_check_without_leading_slash():
    s = Server()
    s.add_health_check_handler("healthz", lambda: None)
    s.register_base_handler()
    assert _client(s).get("/healthz").status_code == 204


def test_custom_route_health_check():
    s = Server()
    s.add_health_check_handler("custom-health-check", lambda: None)
    s.register_base_handler()
    client = _client(s)
    assert client.get("/custom-health-check").status_code == 204
    assert client.get("/healthz").status_code == 200


def test_custom_health_check_error():
    s = Server()

    def unwell():
        raise RuntimeError("not feeling well, will take day off")

    s.add_health_check_handler("custom-health-check", unwell)
    s.register_base_handler()
    client = _client(s)
    resp = client.get("/custom-health-check")
    assert resp.status_code == 500
    assert "not feeling well" in resp.get_data(as_text=True)
    assert client.get("/healthz").status_code == 200


def test_adding_invalid_event_handlers():
    s = Server()
    with pytest.raises(ValueError):
        s.add_topic_event_handler(None, _json_content_only)
    sub = Subscription(metadata={})
    with pytest.raises(ValueError):
        s.add_topic_event_handler(sub, _json_content_only)
    sub.topic = "test"
    with pytest.raises(ValueError):
        s.add_topic_event_handler(sub, _json_content_only)
    sub.pubsub_name = "messages"
    with pytest.raises(ValueError, match="handler route name"):
        s.add_topic_event_handler(sub, _json_content_only)


def test_raw_payload_decode():
    s = Server()
    received = []
    s.add_topic_event_handler(
        Subscription(
            pubsub_name="messages",
            topic="testRaw",
            route="/raw",
            metadata={"rawPayload": "true"},
        ),
        lambda event: received.append(event),
    )
    s.register_base_handler()
    raw = """{
        "datacontenttype" : "application/octet-stream",
        "data_base64" : "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="
    }"""
    resp = _post_event(s, "/raw", raw)
    assert resp.status_code == 200
    assert received[0].data_content_type == "application/octet-stream"
    assert received[0].data_base64 == "eyJtZXNzYWdlIjoiaGVsbG8ifQ=="
    assert received[0].raw_data == b'{"message":"hello"}'


def test_unknown_method_on_get_route():
    s = Server()
    s.register_base_handler()
    assert _client(s).post("/healthz").status_code == 405