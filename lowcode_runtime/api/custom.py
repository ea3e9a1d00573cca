from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from lowcode_runtime.service.dispatcher import is_json_media_type
from lowcode_runtime.service.runtime import get_runtime
from lowcode_runtime.storage.models import HTTP_METHODS, InboundRequest

router = APIRouter()


async def build_inbound_request(request: Request, path: str) -> InboundRequest:
    """Translate a Starlette request into the dispatcher's view of it.

    JSON bodies are decoded; anything else, including JSON that does not
    parse, is handed on as raw bytes.
    """
    runtime = get_runtime()
    raw = await request.body()
    content_type = request.headers.get("content-type")
    body: Any = None
    if raw:
        body = raw
        if is_json_media_type(content_type):
            try:
                body = json.loads(raw)
            except ValueError:
                body = raw
    identity = await runtime.auth.authenticate(request.headers.get("authorization"))
    return InboundRequest(
        method=request.method,
        path="/" + path,
        query=dict(request.query_params),
        headers=dict(request.headers),
        body=body,
        content_type=content_type,
        client_ip=request.client.host if request.client else None,
        identity=identity,
    )


@router.api_route("/{path:path}", methods=list(HTTP_METHODS), include_in_schema=False)
async def dispatch_custom_endpoint(path: str, request: Request) -> Response:
    runtime = get_runtime()
    inbound = await build_inbound_request(request, path)
    result = await runtime.dispatcher.handle(inbound)
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(
        status_code=result.status_code, content=result.body, headers=result.headers
    )
