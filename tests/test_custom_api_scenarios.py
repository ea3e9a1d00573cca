import time

from lowcode_runtime.storage.models import EndpointDefinition

BASE = "/lowcode/custom"


def _register(runtime, **data):
    payload = {"id": data.pop("id", data["path"].strip("/").replace("/", "-") or "root")}
    payload.update(data)
    return runtime.store.upsert(EndpointDefinition.from_dict(payload))


def _double(runtime, **extra):
    return _register(
        runtime,
        id="double",
        path="/double",
        method="POST",
        handlerKind="formula",
        handlerConfig={"expression": "request.body.n * 2"},
        **extra,
    )


def test_formula_endpoint_doubles_input(client, runtime):
    _double(runtime)

    resp = client.post(f"{BASE}/double", json={"n": 21})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == 42
    assert body["executionId"]
    assert "error" not in body
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_disabled_endpoint_is_not_found(client, runtime):
    _double(runtime, enabled=False)

    resp = client.post(f"{BASE}/double", json={"n": 21})

    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["kind"] == "NOT_FOUND"
    assert body["error"]["code"] == 404


def test_request_schema_failure_names_field(client, runtime):
    _double(runtime, requestSchema={"type": "object", "required": ["n"]})

    resp = client.post(f"{BASE}/double", json={})

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["kind"] == "VALIDATION"
    assert "'n'" in error["message"]


def test_user_code_infinite_loop_times_out(client, runtime):
    _register(
        runtime,
        id="spin",
        path="/spin",
        method="POST",
        handlerKind="user_code",
        handlerConfig={"code": "while True:\n    pass", "timeoutMillis": 500},
    )

    started = time.monotonic()
    resp = client.post(f"{BASE}/spin", json={})
    elapsed = time.monotonic() - started

    assert resp.status_code == 504
    assert resp.json()["error"]["kind"] == "TIMEOUT"
    assert elapsed >= 0.5


def test_unreachable_upstream_is_network_failure(client, runtime):
    _register(
        runtime,
        id="proxy",
        path="/proxy",
        method="GET",
        handlerKind="external_http",
        handlerConfig={"url": "http://127.0.0.1:1/nope", "timeoutMillis": 2000},
    )

    resp = client.get(f"{BASE}/proxy")

    assert resp.status_code == 502
    error = resp.json()["error"]
    assert error["kind"] == "UPSTREAM"
    assert error["subKind"] == "network"


def test_rate_limit_rejects_third_request(client, runtime):
    _double(runtime, rateLimit={"windowSeconds": 60, "maxRequests": 2})

    statuses = [client.post(f"{BASE}/double", json={"n": 1}) for _ in range(3)]

    assert [r.status_code for r in statuses] == [200, 200, 429]
    assert statuses[0].headers["X-RateLimit-Remaining"] == "1"
    limited = statuses[2]
    assert limited.json()["error"]["kind"] == "RATE_LIMITED"
    assert int(limited.headers["Retry-After"]) >= 1
    # rejected calls never reach the engine
    assert runtime.store.get_counters("double").call_count == 2


def test_response_cache_hit_and_vary(client, runtime):
    calls = []

    def count(inputs, context):
        calls.append(inputs)
        return {"call": len(calls)}

    runtime.workflow_engine.register("count", count)
    _register(
        runtime,
        id="counted",
        path="/counted",
        method="GET",
        handlerKind="workflow",
        handlerConfig={"workflowId": "count"},
        responseCache={"enabled": True, "ttlSeconds": 60, "varyOn": ["q"]},
    )

    first = client.get(f"{BASE}/counted", params={"q": "a"})
    second = client.get(f"{BASE}/counted", params={"q": "a", "noise": "1"})
    third = client.get(f"{BASE}/counted", params={"q": "b"})

    assert first.json()["data"] == second.json()["data"] == {"call": 1}
    assert first.headers["X-Cache"] == "MISS"
    assert second.headers["X-Cache"] == "HIT"
    assert third.json()["data"] == {"call": 2}
    assert len(calls) == 2


def test_entity_get_requires_id_and_reports_missing(client, runtime):
    runtime.entity_service.seed("orders", [{"id": "o-1", "total": 12}])
    _register(
        runtime,
        id="order",
        path="/order",
        method="GET",
        handlerKind="entity_op",
        handlerConfig={"entityId": "orders", "operation": "get"},
    )

    no_id = client.get(f"{BASE}/order")
    missing = client.get(f"{BASE}/order", params={"id": "o-404"})
    found = client.get(f"{BASE}/order", params={"id": "o-1"})

    assert no_id.status_code == 400
    assert no_id.json()["error"]["kind"] == "VALIDATION"
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "NOT_FOUND"
    assert found.json()["data"] == {"id": "o-1", "total": 12}


def test_unknown_path_is_not_found(client):
    resp = client.get(f"{BASE}/nothing/here")
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "NOT_FOUND"


def test_templated_path_params(client, runtime):
    _register(
        runtime,
        id="order-by-id",
        path="/orders/{id}",
        method="GET",
        handlerKind="formula",
        handlerConfig={"expression": "{'id': request.params.id, 'q': request.query.q}"},
    )

    resp = client.get(f"{BASE}/orders/77", params={"q": "x"})

    assert resp.json()["data"] == {"id": "77", "q": "x"}


def test_authentication_and_permissions(client, runtime, user_headers):
    _register(
        runtime,
        id="create-order",
        path="/orders",
        method="POST",
        handlerKind="formula",
        handlerConfig={"expression": "user.id"},
        authPermissions=["orders:write"],
    )

    anonymous = client.post(f"{BASE}/orders", json={})
    bad_token = client.post(f"{BASE}/orders", json={}, headers={"Authorization": "Bearer nope"})
    reader = client.post(f"{BASE}/orders", json={}, headers={"Authorization": "Bearer reader-token"})
    writer = client.post(f"{BASE}/orders", json={}, headers=user_headers)

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["kind"] == "UNAUTHENTICATED"
    assert bad_token.status_code == 401
    assert reader.status_code == 403
    assert reader.json()["error"]["details"] == {"missingPermissions": ["orders:write"]}
    assert writer.status_code == 200
    assert writer.json()["data"] == "user-1"


def test_cors_preflight_and_origin_check(client, runtime):
    _double(runtime, cors={"enabled": True, "allowedOrigins": ["https://app.test"]})

    preflight = client.options(
        f"{BASE}/double",
        headers={"Origin": "https://app.test", "Access-Control-Request-Method": "POST"},
    )
    allowed = client.post(f"{BASE}/double", json={"n": 1}, headers={"Origin": "https://app.test"})
    denied = client.post(f"{BASE}/double", json={"n": 1}, headers={"Origin": "https://evil.test"})

    assert preflight.status_code == 200
    assert preflight.headers["Access-Control-Allow-Origin"] == "https://app.test"
    assert "POST" in preflight.headers["Access-Control-Allow-Methods"]
    assert allowed.headers["Access-Control-Allow-Origin"] == "https://app.test"
    assert denied.status_code == 403
    assert denied.json()["error"]["kind"] == "FORBIDDEN"


def test_empty_origin_list_rejects_every_origin(client, runtime):
    _double(runtime, cors={"enabled": True, "allowedOrigins": []})

    resp = client.post(f"{BASE}/double", json={"n": 1}, headers={"Origin": "https://evil.test"})

    assert resp.status_code == 403
    assert resp.json()["error"]["kind"] == "FORBIDDEN"
    assert "Access-Control-Allow-Origin" not in resp.headers


def test_preflight_without_cors_is_not_found(client, runtime):
    _double(runtime)
    resp = client.options(f"{BASE}/double", headers={"Origin": "https://app.test"})
    assert resp.status_code == 404


def test_non_json_body_with_schema_is_unsupported(client, runtime):
    _double(runtime, requestSchema={"type": "object"})

    resp = client.post(
        f"{BASE}/double", content=b"n=21", headers={"Content-Type": "application/x-www-form-urlencoded"}
    )

    assert resp.status_code == 415
    assert resp.json()["error"]["kind"] == "VALIDATION"


def test_malformed_json_is_rejected(client, runtime):
    _double(runtime)

    resp = client.post(f"{BASE}/double", content=b"{not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "request body is not valid JSON"


def test_raw_body_reaches_user_code(client, runtime):
    _register(
        runtime,
        id="raw",
        path="/raw",
        method="POST",
        handlerKind="user_code",
        handlerConfig={"code": "return len(request.body)", "timeoutMillis": 5000},
    )

    resp = client.post(f"{BASE}/raw", content=b"abcd", headers={"Content-Type": "text/plain"})

    assert resp.status_code == 200
    assert resp.json()["data"] == 4


def test_counters_track_calls_and_errors(client, runtime):
    _double(runtime)

    client.post(f"{BASE}/double", json={"n": 2})
    client.post(f"{BASE}/double", json={"n": None})

    counters = runtime.store.get_counters("double")
    assert counters.call_count == 2
    assert counters.error_count == 1
    assert counters.total_latency_ns > 0


def test_definition_changes_apply_without_restart(client, runtime):
    _double(runtime)
    assert client.post(f"{BASE}/double", json={"n": 2}).json()["data"] == 4

    _register(
        runtime,
        id="double",
        path="/double",
        method="POST",
        handlerKind="formula",
        handlerConfig={"expression": "request.body.n * 3"},
    )

    assert client.post(f"{BASE}/double", json={"n": 2}).json()["data"] == 6


def test_request_id_is_echoed(client, runtime):
    _double(runtime)
    resp = client.post(f"{BASE}/double", json={"n": 1}, headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
