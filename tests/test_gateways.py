import json

import httpx
import pytest

from lowcode_runtime.service.entities import EntityGateway, HttpEntityService, MemoryEntityService
from lowcode_runtime.service.errors import (
    ConfigurationError,
    EntityFailure,
    ErrorKind,
    RecordNotFound,
    RequestValidationError,
    WorkflowFailure,
)
from lowcode_runtime.service.workflow import (
    HttpWorkflowEngine,
    InProcessWorkflowEngine,
    WorkflowGateway,
    default_workflow_input,
)


def _payload(body=None, query=None, params=None):
    return {"body": body, "query": query or {}, "params": params or {}, "headers": {}}


# -- workflows ---------------------------------------------------------------


def test_default_workflow_input_merges_query_and_body():
    assert default_workflow_input(_payload({"a": 1}, {"a": "q", "b": "2"})) == {"a": 1, "b": "2"}
    assert default_workflow_input(_payload(None, {"b": "2"})) == {"b": "2"}
    assert default_workflow_input(_payload([1, 2], {"b": "2"})) == {"b": "2", "body": [1, 2]}


async def test_in_process_workflow_with_mappings():
    engine = InProcessWorkflowEngine()
    seen = {}

    async def approve(inputs, context):
        seen["inputs"] = inputs
        seen["endpoint"] = context["endpointId"]
        return {"approved": inputs["amount"] < 100}

    engine.register("approve", approve)
    gateway = WorkflowGateway(engine)
    payload = _payload({"amount": 40})
    result = await gateway.invoke(
        {
            "workflowId": "approve",
            "inputMapping": {"amount": "request.body.amount", "who": "user.id"},
            "outputMapping": {"ok": "result.approved"},
        },
        request_payload=payload,
        names={"request": payload, "user": {"id": "u1"}},
        context={"endpointId": "ep"},
    )

    assert result == {"ok": True}
    assert seen == {"inputs": {"amount": 40, "who": "u1"}, "endpoint": "ep"}


async def test_workflow_failures():
    engine = InProcessWorkflowEngine()

    def explode(inputs, context):
        raise RuntimeError("step 3 failed")

    engine.register("explode", explode)
    gateway = WorkflowGateway(engine)

    with pytest.raises(WorkflowFailure) as exc_info:
        await gateway.invoke({"workflowId": "explode"}, request_payload=_payload(), names={}, context={})
    assert "step 3 failed" in exc_info.value.message
    assert exc_info.value.kind is ErrorKind.WORKFLOW

    with pytest.raises(WorkflowFailure):
        await gateway.invoke({"workflowId": "missing"}, request_payload=_payload(), names={}, context={})

    with pytest.raises(ConfigurationError):
        await gateway.invoke({}, request_payload=_payload(), names={}, context={})


async def test_http_workflow_engine_unwraps_output():
    def handler(request: httpx.Request):
        assert request.url.path == "/workflows/wf-1/execute"
        sent = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "output": {"echo": sent["input"]}})

    engine = HttpWorkflowEngine("https://wf.test/", transport=httpx.MockTransport(handler))
    assert await engine.execute("wf-1", {"x": 1}, {}) == {"echo": {"x": 1}}


async def test_http_workflow_engine_reports_failed_run():
    def handler(request: httpx.Request):
        return httpx.Response(200, json={"success": False, "error": {"message": "rejected"}})

    engine = HttpWorkflowEngine("https://wf.test", transport=httpx.MockTransport(handler))
    with pytest.raises(WorkflowFailure) as exc_info:
        await engine.execute("wf-1", {}, {})
    assert exc_info.value.message == "rejected"


# -- entities -------------------------------------------------------------------


def _entities():
    service = MemoryEntityService()
    service.seed(
        "orders",
        [
            {"id": "1", "status": "open", "total": 30},
            {"id": "2", "status": "closed", "total": 10},
            {"id": "3", "status": "open", "total": 20},
        ],
    )
    return EntityGateway(service)


async def test_entity_list_filters_sorts_and_pages():
    gateway = _entities()
    rows = await gateway.execute(
        {"entityId": "orders", "operation": "list", "filters": {"status": "open"}},
        request_payload=_payload(query={"sortBy": "total", "limit": "1"}),
        context={},
    )
    assert [r["id"] for r in rows] == ["3"]

    rows = await gateway.execute(
        {"entityId": "orders", "operation": "list", "sortBy": "total", "sortOrder": "desc"},
        request_payload=_payload(),
        context={},
    )
    assert [r["id"] for r in rows] == ["1", "3", "2"]


async def test_entity_get_and_missing_record():
    gateway = _entities()
    record = await gateway.execute(
        {"entityId": "orders", "operation": "get"},
        request_payload=_payload(params={"id": "2"}),
        context={},
    )
    assert record["status"] == "closed"

    with pytest.raises(RecordNotFound) as exc_info:
        await gateway.execute(
            {"entityId": "orders", "operation": "get"},
            request_payload=_payload(params={"id": "404"}),
            context={},
        )
    assert exc_info.value.kind is ErrorKind.NOT_FOUND


async def test_entity_create_update_delete_track_user():
    gateway = _entities()
    context = {"user": {"id": "u1"}}
    created = await gateway.execute(
        {"entityId": "orders", "operation": "create"},
        request_payload=_payload({"status": "open", "total": 5}),
        context=context,
    )
    assert created["createdBy"] == "u1"

    updated = await gateway.execute(
        {"entityId": "orders", "operation": "update"},
        request_payload=_payload({"status": "closed", "createdBy": "mallory"}, params={"id": created["id"]}),
        context={"user": {"id": "u2"}},
    )
    assert updated["status"] == "closed"
    assert updated["createdBy"] == "u1"
    assert updated["updatedBy"] == "u2"

    deleted = await gateway.execute(
        {"entityId": "orders", "operation": "delete"},
        request_payload=_payload(query={"id": created["id"]}),
        context=context,
    )
    assert deleted == {"id": created["id"], "deleted": True}

    with pytest.raises(RecordNotFound):
        await gateway.execute(
            {"entityId": "orders", "operation": "delete"},
            request_payload=_payload(query={"id": created["id"]}),
            context=context,
        )


@pytest.mark.parametrize(
    "config, payload, error",
    [
        ({"operation": "list"}, _payload(), ConfigurationError),
        ({"entityId": "orders", "operation": "merge"}, _payload(), ConfigurationError),
        ({"entityId": "orders", "operation": "get"}, _payload(), RequestValidationError),
        ({"entityId": "orders", "operation": "create"}, _payload([1]), RequestValidationError),
        ({"entityId": "orders", "operation": "list"}, _payload(query={"limit": "x"}), RequestValidationError),
        ({"entityId": "orders", "operation": "list"}, _payload(query={"sortOrder": "up"}), RequestValidationError),
    ],
)
async def test_entity_request_errors(config, payload, error):
    with pytest.raises(error):
        await _entities().execute(config, request_payload=payload, context={})


async def test_entity_service_failure_maps_to_entity_kind():
    def handler(request: httpx.Request):
        return httpx.Response(500, json={"error": "db down"})

    gateway = EntityGateway(HttpEntityService("https://entities.test", transport=httpx.MockTransport(handler)))
    with pytest.raises(EntityFailure) as exc_info:
        await gateway.execute(
            {"entityId": "orders", "operation": "list"}, request_payload=_payload(), context={}
        )
    assert exc_info.value.kind is ErrorKind.ENTITY
    assert exc_info.value.details == {"entityId": "orders", "operation": "list"}


async def test_http_entity_service_404_means_missing():
    def handler(request: httpx.Request):
        assert request.url.path == "/entities/orders/records/9"
        return httpx.Response(404)

    service = HttpEntityService("https://entities.test", transport=httpx.MockTransport(handler))
    assert await service.get("orders", "9") is None
