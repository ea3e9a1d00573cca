"""Integration tests for the endpoint administration surface.

Covers:
- Definition CRUD and conflict handling
- Admin authentication and role checks
- Test invocations, stats, cache invalidation and the OpenAPI export
"""

import pytest

BASE = "/lowcode/custom"
ADMIN = "/v1/admin/endpoints"


def _definition(**extra):
    data = {
        "id": "double",
        "path": "/double",
        "method": "POST",
        "handlerKind": "formula",
        "handlerConfig": {"expression": "request.body.n * 2"},
    }
    data.update(extra)
    return data


@pytest.fixture
def created(client, admin_headers):
    resp = client.post(ADMIN, json=_definition(), headers=admin_headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_health(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["store"] == "MemoryDefinitionStore"


def test_admin_requires_authentication(client, user_headers):
    anonymous = client.get(ADMIN)
    member = client.get(ADMIN, headers=user_headers)

    assert anonymous.status_code == 401
    assert anonymous.json()["error"]["kind"] == "UNAUTHENTICATED"
    assert member.status_code == 403
    assert member.json()["error"]["kind"] == "FORBIDDEN"
    assert member.headers["Cache-Control"] == "no-store"


def test_create_then_invoke(client, created):
    assert created["id"] == "double"
    assert created["url"] == f"{BASE}/double"
    assert created["stats"]["callCount"] == 0

    resp = client.post(f"{BASE}/double", json={"n": 5})
    assert resp.json()["data"] == 10


def test_create_assigns_id_when_missing(client, admin_headers):
    payload = _definition()
    payload.pop("id")
    resp = client.post(ADMIN, json=payload, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.json()["data"]["id"]


def test_duplicate_create_conflicts(client, admin_headers, created):
    resp = client.post(ADMIN, json=_definition(path="/other"), headers=admin_headers)
    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["kind"] == "VALIDATION"
    assert error["subKind"] == "conflict"
    assert error["details"] == {"id": "double"}


@pytest.mark.parametrize(
    "overrides",
    [
        {"handlerKind": "teleport"},
        {"path": "relative"},
        {"method": "TRACE"},
        {"requestSchema": {"type": "nonsense"}},
        {"rateLimit": {"windowSeconds": 0, "maxRequests": 1}},
        {"unexpected": True},
    ],
)
def test_invalid_definitions_rejected(client, admin_headers, overrides):
    resp = client.post(ADMIN, json=_definition(**overrides), headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["kind"] == "VALIDATION"


def test_list_and_get(client, admin_headers, created):
    client.post(
        ADMIN,
        json=_definition(id="off", path="/off", enabled=False),
        headers=admin_headers,
    )

    everything = client.get(ADMIN, headers=admin_headers).json()["data"]
    live = client.get(ADMIN, params={"enabled_only": "true"}, headers=admin_headers).json()["data"]
    single = client.get(f"{ADMIN}/double", headers=admin_headers)

    assert {d["id"] for d in everything} == {"double", "off"}
    assert [d["id"] for d in live] == ["double"]
    assert single.json()["data"]["handlerConfig"] == {"expression": "request.body.n * 2"}


def test_get_unknown_is_not_found(client, admin_headers):
    resp = client.get(f"{ADMIN}/ghost", headers=admin_headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "NOT_FOUND"
    assert resp.json()["error"]["subKind"] == "not_found"


def test_replace_takes_effect_immediately(client, admin_headers, created):
    assert client.post(f"{BASE}/double", json={"n": 2}).json()["data"] == 4

    resp = client.put(
        f"{ADMIN}/double",
        json=_definition(handlerConfig={"expression": "request.body.n * 10"}),
        headers=admin_headers,
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["createdAt"] == created["createdAt"]
    assert client.post(f"{BASE}/double", json={"n": 2}).json()["data"] == 20


def test_replace_rejects_mismatched_id(client, admin_headers, created):
    resp = client.put(f"{ADMIN}/double", json=_definition(id="other"), headers=admin_headers)
    assert resp.status_code == 400


def test_delete(client, admin_headers, created):
    resp = client.delete(f"{ADMIN}/double", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"id": "double", "deleted": True}

    assert client.post(f"{BASE}/double", json={"n": 2}).status_code == 404
    assert client.delete(f"{ADMIN}/double", headers=admin_headers).status_code == 404


def test_test_invocation_bypasses_policies_and_counters(client, admin_headers, runtime):
    client.post(
        ADMIN,
        json=_definition(
            authPermissions=["orders:write"],
            rateLimit={"windowSeconds": 60, "maxRequests": 1},
            handlerConfig={"expression": "{'n': request.body.n, 'test': context.testInvocation}"},
        ),
        headers=admin_headers,
    )

    for _ in range(3):
        resp = client.post(f"{ADMIN}/double/test", json={"body": {"n": 7}}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"n": 7, "test": True}

    assert runtime.store.get_counters("double").call_count == 0


def test_test_invocation_reports_failures(client, admin_headers, created):
    resp = client.post(f"{ADMIN}/double/test", json={"body": {}}, headers=admin_headers)
    assert resp.status_code == 500
    assert resp.json()["error"]["kind"] == "INTERNAL"


def test_stats_reflect_invocations(client, admin_headers, created):
    client.post(f"{BASE}/double", json={"n": 1})
    client.post(f"{BASE}/double", json={"n": None})

    stats = client.get(f"{ADMIN}/double/stats", headers=admin_headers).json()["data"]

    assert stats["id"] == "double"
    assert stats["callCount"] == 2
    assert stats["errorCount"] == 1
    assert stats["errorRate"] == 0.5
    assert stats["lastInvokedAt"]


def test_cache_invalidate_purges_responses(client, admin_headers, runtime):
    calls = []
    runtime.workflow_engine.register("tick", lambda inputs, ctx: calls.append(1) or len(calls))
    client.post(
        ADMIN,
        json={
            "id": "ticker",
            "path": "/ticker",
            "method": "GET",
            "handlerKind": "workflow",
            "handlerConfig": {"workflowId": "tick"},
            "responseCache": {"ttlSeconds": 60},
        },
        headers=admin_headers,
    )

    assert client.get(f"{BASE}/ticker").json()["data"] == 1
    assert client.get(f"{BASE}/ticker").json()["data"] == 1

    resp = client.post(f"{ADMIN}/cache/invalidate", json={"endpointId": "ticker"}, headers=admin_headers)
    assert resp.json()["data"] == {"endpointId": "ticker", "purgedResponses": 1}
    assert client.get(f"{BASE}/ticker").json()["data"] == 2


def test_openapi_export(client, admin_headers):
    client.post(
        ADMIN,
        json=_definition(
            requestSchema={"type": "object", "required": ["n"]},
            responseSchema={"type": "number"},
            authRequired=True,
            rateLimit={"windowSeconds": 30, "maxRequests": 5},
        ),
        headers=admin_headers,
    )
    client.post(
        ADMIN,
        json={
            "id": "order",
            "path": "/orders/{id}",
            "method": "GET",
            "handlerKind": "formula",
            "handlerConfig": {"expression": "request.params.id"},
        },
        headers=admin_headers,
    )

    doc = client.get(f"{ADMIN}/openapi.json", headers=admin_headers).json()

    assert doc["openapi"] == "3.0.3"
    post = doc["paths"][f"{BASE}/double"]["post"]
    assert post["operationId"] == "double"
    assert post["requestBody"]["content"]["application/json"]["schema"]["required"] == ["n"]
    success = post["responses"]["200"]["content"]["application/json"]["schema"]
    assert success["properties"]["data"] == {"type": "number"}
    assert post["security"] == [{"bearerAuth": []}]
    assert post["x-ratelimit"]["maxRequests"] == 5

    get = doc["paths"][f"{BASE}/orders/{{id}}"]["get"]
    assert get["parameters"][0]["name"] == "id"
    assert "requestBody" not in get
