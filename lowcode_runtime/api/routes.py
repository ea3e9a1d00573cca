from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from lowcode_runtime import __version__
from lowcode_runtime.api.schemas import (
    CacheInvalidateRequest,
    EndpointDefinitionRequest,
    Envelope,
    TestInvocationRequest,
)
from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.auth import is_admin
from lowcode_runtime.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from lowcode_runtime.service.openapi import build_openapi
from lowcode_runtime.service.runtime import get_runtime
from lowcode_runtime.storage.models import EndpointDefinition, InboundRequest

logger = get_logger(__name__)

router = APIRouter()
admin = APIRouter(prefix="/v1/admin/endpoints", tags=["custom-endpoints"])


async def get_admin_user(authorization: Optional[str] = Header(None)) -> dict:
    runtime = get_runtime()
    identity = await runtime.auth.authenticate(authorization)
    if not identity:
        raise AuthenticationError("authentication required")
    if not is_admin(identity):
        raise ForbiddenError("admin access required")
    return identity


def _ok(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=Envelope.ok(data).to_wire())


def _get_or_404(definition_id: str) -> EndpointDefinition:
    definition = get_runtime().store.get(definition_id)
    if definition is None:
        raise NotFoundError(
            f"endpoint '{definition_id}' not found", detail={"id": definition_id}
        )
    return definition


def _describe(definition: EndpointDefinition) -> dict:
    runtime = get_runtime()
    return {
        **definition.to_dict(),
        "url": f"{runtime.settings.mount_prefix}{definition.path}",
        "stats": runtime.store.get_counters(definition.id).to_dict(),
    }


@router.get("/healthz")
async def health() -> dict:
    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "redis": runtime.cache is not None,
        "store": type(runtime.store).__name__,
    }


@admin.get("")
async def list_endpoints(enabled_only: bool = False, _admin: dict = Depends(get_admin_user)):
    definitions = get_runtime().store.list(enabled_only=enabled_only)
    return _ok([_describe(d) for d in definitions])


@admin.post("")
async def create_endpoint(
    body: EndpointDefinitionRequest, admin_user: dict = Depends(get_admin_user)
):
    runtime = get_runtime()
    payload = body.to_payload()
    payload["id"] = body.id or str(uuid.uuid4())
    if runtime.store.get(payload["id"]) is not None:
        raise ConflictError(
            f"endpoint '{payload['id']}' already exists", detail={"id": payload["id"]}
        )
    definition = runtime.store.upsert(EndpointDefinition.from_dict(payload))
    logger.info(
        "admin_endpoint_created",
        definition_id=definition.id,
        path=definition.path,
        method=definition.method,
        user_id=admin_user.get("id"),
    )
    return _ok(_describe(definition), status_code=201)


@admin.get("/openapi.json")
async def openapi_document(_admin: dict = Depends(get_admin_user)):
    runtime = get_runtime()
    return build_openapi(
        runtime.store.list(enabled_only=True), mount_prefix=runtime.settings.mount_prefix
    )


@admin.post("/cache/invalidate")
async def invalidate_cache(
    body: CacheInvalidateRequest, _admin: dict = Depends(get_admin_user)
):
    runtime = get_runtime()
    runtime.definitions.invalidate(body.endpoint_id)
    purged = await runtime.purge_responses(body.endpoint_id)
    return _ok({"endpointId": body.endpoint_id, "purgedResponses": purged})


@admin.get("/{endpoint_id}")
async def get_endpoint(endpoint_id: str, _admin: dict = Depends(get_admin_user)):
    return _ok(_describe(_get_or_404(endpoint_id)))


@admin.put("/{endpoint_id}")
async def replace_endpoint(
    endpoint_id: str,
    body: EndpointDefinitionRequest,
    admin_user: dict = Depends(get_admin_user),
):
    runtime = get_runtime()
    existing = _get_or_404(endpoint_id)
    if body.id is not None and body.id != endpoint_id:
        raise ValidationError(
            "body id does not match the endpoint being replaced",
            detail={"id": body.id, "endpointId": endpoint_id},
        )
    payload = body.to_payload()
    payload["id"] = endpoint_id
    payload["createdAt"] = existing.created_at.isoformat()
    definition = runtime.store.upsert(EndpointDefinition.from_dict(payload))
    await runtime.purge_responses(endpoint_id)
    logger.info(
        "admin_endpoint_replaced", definition_id=endpoint_id, user_id=admin_user.get("id")
    )
    return _ok(_describe(definition))


@admin.delete("/{endpoint_id}")
async def delete_endpoint(endpoint_id: str, admin_user: dict = Depends(get_admin_user)):
    runtime = get_runtime()
    if not runtime.store.delete(endpoint_id):
        raise NotFoundError(
            f"endpoint '{endpoint_id}' not found", detail={"id": endpoint_id}
        )
    await runtime.purge_responses(endpoint_id)
    logger.info(
        "admin_endpoint_deleted", definition_id=endpoint_id, user_id=admin_user.get("id")
    )
    return _ok({"id": endpoint_id, "deleted": True})


@admin.post("/{endpoint_id}/test")
async def test_endpoint(
    endpoint_id: str,
    body: TestInvocationRequest,
    request: Request,
    admin_user: dict = Depends(get_admin_user),
):
    """Run the engine directly against a stored definition.

    Policies (CORS, auth, rate limit, response cache) and counters are
    bypassed; the caller's identity is used as the request identity.
    """
    runtime = get_runtime()
    definition = _get_or_404(endpoint_id)
    inbound = InboundRequest(
        method=definition.method,
        path=definition.path,
        query=body.query,
        headers=body.headers,
        body=body.body,
        content_type="application/json",
        client_ip=request.client.host if request.client else None,
        identity=admin_user,
        params=body.params,
    )
    envelope = await runtime.engine.execute(
        definition, inbound, caller_context={"testInvocation": True}
    )
    return JSONResponse(status_code=envelope.status_code, content=envelope.to_wire())


@admin.get("/{endpoint_id}/stats")
async def endpoint_stats(endpoint_id: str, _admin: dict = Depends(get_admin_user)):
    runtime = get_runtime()
    _get_or_404(endpoint_id)
    return _ok({"id": endpoint_id, **runtime.store.get_counters(endpoint_id).to_dict()})


router.include_router(admin)
