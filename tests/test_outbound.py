import json

import httpx
import pytest

from lowcode_runtime.service.errors import ConfigurationError, ErrorKind, UpstreamError
from lowcode_runtime.service.outbound import OutboundHttpClient


def _client(handler):
    return OutboundHttpClient(user_agent="lowcode-runtime/test", transport=httpx.MockTransport(handler))


async def test_sends_user_agent_and_json_body():
    seen = {}

    def handler(request: httpx.Request):
        seen["ua"] = request.headers["user-agent"]
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["x"] = request.headers.get("x-tenant")
        return httpx.Response(201, json={"ok": True})

    response = await _client(handler).request(
        "https://upstream.test/items",
        method="post",
        headers={"X-Tenant": "t1", "User-Agent": "spoofed"},
        body={"n": 1},
    )

    assert response.status == 201
    assert response.ok
    assert response.body == {"ok": True}
    assert seen == {"ua": "lowcode-runtime/test", "method": "POST", "body": {"n": 1}, "x": "t1"}


async def test_get_drops_body_and_returns_text():
    def handler(request: httpx.Request):
        assert request.content == b""
        return httpx.Response(200, text="plain", headers={"content-type": "text/plain"})

    response = await _client(handler).request("https://upstream.test/", body={"ignored": True})
    assert response.body == "plain"


async def test_non_2xx_is_returned_not_raised():
    def handler(request: httpx.Request):
        return httpx.Response(503, json={"error": "down"})

    response = await _client(handler).request("https://upstream.test/")
    assert response.status == 503
    assert not response.ok
    assert response.body == {"error": "down"}


async def test_redirects_are_not_followed():
    calls = []

    def handler(request: httpx.Request):
        calls.append(str(request.url))
        return httpx.Response(302, headers={"location": "https://elsewhere.test/"})

    response = await _client(handler).request("https://upstream.test/start")
    assert response.status == 302
    assert calls == ["https://upstream.test/start"]


async def test_timeout_maps_to_upstream_timeout():
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        await _client(handler).request("https://upstream.test/", timeout_ms=50)
    assert exc_info.value.kind is ErrorKind.UPSTREAM
    assert exc_info.value.sub_kind == "timeout"


async def test_connection_failure_maps_to_network():
    def handler(request: httpx.Request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamError) as exc_info:
        await _client(handler).request("https://upstream.test/")
    assert exc_info.value.sub_kind == "network"


@pytest.mark.parametrize(
    "url, method",
    [("ftp://upstream.test/", "GET"), ("/relative", "GET"), ("https://upstream.test/", "TRACE")],
)
async def test_bad_configuration_rejected(url, method):
    def handler(request: httpx.Request):
        raise AssertionError("no request expected")

    with pytest.raises(ConfigurationError):
        await _client(handler).request(url, method=method)
