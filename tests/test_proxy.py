from __future__ import annotations

import gzip

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from quit_hero_api.configuration import BackofficeConfig, PocketBaseConfig
from quit_hero_api.proxy import build_target_url, create_proxy_router, forward_request_headers, relay_response


def make_app(handler) -> TestClient:
    config = BackofficeConfig(pocketbase=PocketBaseConfig(url="http://pb.internal:8090", url_is_default=False))
    app = FastAPI()
    app.include_router(create_proxy_router(config, transport=httpx.MockTransport(handler)))
    return TestClient(app)


def test_build_target_url():
    assert build_target_url("http://pb/", "api/health", []) == "http://pb/api/health"
    assert build_target_url("http://pb", "", [("path", "api/a"), ("path", "b")]) == "http://pb/api/a/b"
    assert (
        build_target_url("http://pb", "api/collections/users/records", [("path", "ignored"), ("a", "1"), ("a", "2")])
        == "http://pb/api/collections/users/records?a=1&a=2"
    )


def test_forward_request_headers():
    headers = forward_request_headers(
        {
            "host": "admin.example.com",
            "connection": "keep-alive",
            "content-length": "12",
            "authorization": "tok",
            "content-type": "application/json",
        },
        "pb.internal:8090",
    )

    assert headers == {
        "authorization": "tok",
        "content-type": "application/json",
        "host": "pb.internal:8090",
    }


def test_get_is_forwarded_with_query_and_host():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["host"] = request.headers["host"]
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"items": [{"id": "u1"}], "page": 2})

    response = make_app(handler).get(
        "/api/pocketbase/api/collections/users/records",
        params={"page": "2", "filter": 'name ~ "a"'},
        headers={"Authorization": "tok"},
    )

    assert response.status_code == 200
    assert response.json() == {"items": [{"id": "u1"}], "page": 2}
    assert response.headers["content-type"] == "application/json"
    assert seen["url"].startswith("http://pb.internal:8090/api/collections/users/records?page=2&filter=")
    assert seen["host"] == "pb.internal:8090"
    assert seen["auth"] == "tok"


def test_path_query_parameter_selects_target():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"code": 200, "message": "API is healthy."})

    response = make_app(handler).get("/api/pocketbase", params={"path": "api/health", "fields": "code"})

    assert response.status_code == 200
    assert seen["url"] == "http://pb.internal:8090/api/health?fields=code"


def test_body_is_forwarded_for_writes():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = request.content
        return httpx.Response(200, json={"token": "tok", "record": {"id": "a1"}})

    response = make_app(handler).post(
        "/api/pocketbase/api/collections/admin_users/auth-with-password",
        content=b'{"identity":"admin@example.com","password":"secret"}',
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert seen["method"] == "POST"
    assert seen["body"] == b'{"identity":"admin@example.com","password":"secret"}'


def test_get_never_sends_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        return httpx.Response(200, json={})

    make_app(handler).get("/api/pocketbase/api/health")

    assert seen["body"] == b""


def test_upstream_status_and_text_are_relayed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="not here", headers={"content-type": "text/plain", "x-request-id": "r1"})

    response = make_app(handler).delete("/api/pocketbase/api/files/x")

    assert response.status_code == 404
    assert response.text == "not here"
    assert response.headers["x-request-id"] == "r1"


def test_json_error_is_relayed_as_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"code": 403, "message": "Only admins can perform this action.", "data": {}})

    response = make_app(handler).get("/api/pocketbase/api/collections/admin_users/records")

    assert response.status_code == 403
    assert response.json()["message"] == "Only admins can perform this action."


def test_forwarding_failure_returns_500():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    response = make_app(handler).get("/api/pocketbase/api/health")

    assert response.status_code == 500
    assert response.json() == {"error": "Proxy request failed", "message": "connection refused"}


def test_null_body_is_relayed_as_json():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"null")

    response = make_app(handler).get("/api/pocketbase/api/settings")

    assert response.status_code == 200
    assert response.json() is None
    assert response.headers["content-type"] == "application/json"


def test_scalar_body_is_relayed_as_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"42")

    response = make_app(handler).get("/api/pocketbase/api/count")

    assert response.text == "42"
    assert "application/json" not in response.headers.get("content-type", "")


def test_encoding_and_hop_by_hop_headers_are_dropped():
    upstream = httpx.Response(
        200,
        content=gzip.compress(b'{"code":200}'),
        headers={
            "content-type": "application/json",
            "content-encoding": "gzip",
            "connection": "keep-alive",
            "keep-alive": "timeout=5",
            "x-request-id": "r2",
        },
    )

    response = relay_response(upstream)

    assert response.body == b'{"code":200}'
    assert "content-encoding" not in response.headers
    assert "connection" not in response.headers
    assert "keep-alive" not in response.headers
    assert response.headers["content-length"] == str(len(b'{"code":200}'))
    assert response.headers["x-request-id"] == "r2"


def test_repeated_set_cookie_headers_stay_separate():
    upstream = httpx.Response(
        200,
        json={"ok": True},
        headers=[("set-cookie", "pb_auth=one; Path=/"), ("set-cookie", "pb_theme=dark; Path=/")],
    )

    response = relay_response(upstream)

    assert response.headers.getlist("set-cookie") == ["pb_auth=one; Path=/", "pb_theme=dark; Path=/"]


def test_head_is_forwarded():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        return httpx.Response(200, headers={"x-total": "3"})

    response = make_app(handler).head("/api/pocketbase/api/collections/users/records")

    assert response.status_code == 200
    assert seen["method"] == "HEAD"
    assert response.headers["x-total"] == "3"
    assert response.content == b""
