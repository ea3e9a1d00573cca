from __future__ import annotations

import copy
import re
from typing import Any, Dict, Iterable

from lowcode_runtime import __version__
from lowcode_runtime.storage.models import EndpointDefinition

_PARAM = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

_ENVELOPE_ERROR = {
    "type": "object",
    "properties": {
        "success": {"type": "boolean", "enum": [False]},
        "error": {
            "type": "object",
            "properties": {
                "message": {"type": "string"},
                "kind": {"type": "string"},
                "code": {"type": "integer"},
                "subKind": {"type": "string"},
                "details": {},
            },
            "required": ["message", "kind", "code"],
        },
        "executionId": {"type": "string"},
        "responseTimeMillis": {"type": "number"},
        "timestamp": {"type": "string", "format": "date-time"},
    },
}


def _success_schema(data_schema: Dict[str, Any] | None) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "success": {"type": "boolean", "enum": [True]},
            "data": copy.deepcopy(data_schema) if data_schema else {},
            "executionId": {"type": "string"},
            "responseTimeMillis": {"type": "number"},
            "timestamp": {"type": "string", "format": "date-time"},
        },
    }


def _operation(definition: EndpointDefinition) -> Dict[str, Any]:
    operation: Dict[str, Any] = {
        "operationId": definition.id,
        "summary": definition.name or f"{definition.method} {definition.path}",
        "tags": list(definition.tags) or [definition.category],
        "responses": {
            "200": {
                "description": "Successful invocation",
                "content": {
                    "application/json": {"schema": _success_schema(definition.response_schema)}
                },
            },
            "default": {
                "description": "Failed invocation",
                "content": {"application/json": {"schema": copy.deepcopy(_ENVELOPE_ERROR)}},
            },
        },
    }
    if definition.description:
        operation["description"] = definition.description
    params = [
        {"name": name, "in": "path", "required": True, "schema": {"type": "string"}}
        for name in _PARAM.findall(definition.path)
    ]
    if params:
        operation["parameters"] = params
    if definition.request_schema and definition.method not in ("GET", "HEAD", "DELETE"):
        operation["requestBody"] = {
            "required": True,
            "content": {"application/json": {"schema": copy.deepcopy(definition.request_schema)}},
        }
    if definition.auth_required or definition.auth_permissions:
        operation["security"] = [{"bearerAuth": []}]
    limit = definition.rate_limit
    if limit and limit.enabled:
        operation["x-ratelimit"] = {
            "windowSeconds": limit.window_seconds,
            "maxRequests": limit.max_requests,
            "keyingPolicy": limit.keying_policy,
        }
    return operation


def build_openapi(
    definitions: Iterable[EndpointDefinition],
    *,
    mount_prefix: str,
    title: str = "Custom API",
) -> Dict[str, Any]:
    """OpenAPI 3.0.3 document describing every enabled custom endpoint."""
    paths: Dict[str, Dict[str, Any]] = {}
    for definition in sorted(definitions, key=lambda d: (d.path, d.method)):
        if not definition.enabled:
            continue
        full_path = f"{mount_prefix}{definition.path}" if definition.path != "/" else mount_prefix or "/"
        paths.setdefault(full_path, {})[definition.method.lower()] = _operation(definition)
    return {
        "openapi": "3.0.3",
        "info": {"title": title, "version": __version__},
        "paths": paths,
        "components": {
            "securitySchemes": {
                "bearerAuth": {"type": "http", "scheme": "bearer"},
            }
        },
    }
