from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from lowcode_runtime.api.schemas import Envelope
from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.auth import missing_permissions
from lowcode_runtime.service.definition_cache import DefinitionCache
from lowcode_runtime.service.engine import ExecutionEngine
from lowcode_runtime.service.errors import ErrorKind
from lowcode_runtime.service.policies import (
    cors_headers,
    origin_allowed,
    rate_limit_key,
    response_cache_key,
)
from lowcode_runtime.storage.models import EndpointDefinition, InboundRequest, utcnow

logger = get_logger(__name__)


class RateLimiter(Protocol):
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]: ...


class ResponseCache(Protocol):
    async def get_response(self, endpoint_id: str, cache_key: str) -> Optional[dict]: ...

    async def set_response(
        self, endpoint_id: str, cache_key: str, payload: dict, ttl_seconds: int
    ) -> None: ...

    async def purge_responses(self, endpoint_id: Optional[str] = None) -> int: ...


@dataclass
class DispatchResult:
    status_code: int
    body: Optional[dict]
    headers: Dict[str, str] = field(default_factory=dict)


def is_json_media_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media = content_type.split(";", 1)[0].strip().lower()
    return media == "application/json" or media.endswith("+json")


class RequestDispatcher:
    """HTTP-facing entry point for custom endpoints.

    Runs, in order: resolution, CORS and preflight, authentication and
    permissions, body media checks, rate limiting, the GET response cache, the
    engine, counters and the cache write. Rejections before the engine return
    an envelope but do not touch the counters.
    """

    def __init__(
        self,
        *,
        definitions: DefinitionCache,
        engine: ExecutionEngine,
        rate_limiter: RateLimiter,
        response_cache: ResponseCache,
    ) -> None:
        self.definitions = definitions
        self.engine = engine
        self.rate_limiter = rate_limiter
        self.response_cache = response_cache

    @property
    def store(self):
        return self.definitions.store

    async def handle(self, request: InboundRequest) -> DispatchResult:
        if request.method == "OPTIONS":
            preflight = self._preflight(request)
            if preflight is not None:
                return preflight

        resolved = self.definitions.resolve(request.path, request.method)
        if resolved is None:
            return self._reject(
                ErrorKind.NOT_FOUND,
                f"no endpoint for {request.method} {request.path}",
            )
        definition, params = resolved
        request.params = dict(params)

        if not origin_allowed(definition, request.origin):
            logger.warning(
                "custom_api_origin_rejected", endpoint_id=definition.id, origin=request.origin
            )
            return self._reject(ErrorKind.FORBIDDEN, "origin not allowed")
        cors = cors_headers(definition, request.origin)

        rejection = self._check_auth(definition, request)
        if rejection is not None:
            rejection.headers.update(cors)
            return rejection

        rejection = self._check_body(definition, request)
        if rejection is not None:
            rejection.headers.update(cors)
            return rejection

        headers = dict(cors)
        rejection = await self._check_rate_limit(definition, request, headers)
        if rejection is not None:
            return rejection

        cache_key = None
        policy = definition.response_cache
        if request.method == "GET" and policy is not None and policy.enabled:
            cache_key = response_cache_key(definition, request)
            cached = await self._cached_response(definition, cache_key)
            if cached is not None:
                headers["X-Cache"] = "HIT"
                return DispatchResult(200, cached, headers)
            headers["X-Cache"] = "MISS"

        started = time.perf_counter_ns()
        envelope = await self.engine.execute(definition, request)
        latency_ns = time.perf_counter_ns() - started
        self._record(definition, latency_ns, failed=not envelope.success)

        body = envelope.to_wire()
        if envelope.success and cache_key is not None:
            await self._store_response(definition, cache_key, body)
        return DispatchResult(envelope.status_code, body, headers)

    # ------------------------------------------------------------------
    # policy steps
    # ------------------------------------------------------------------

    def _preflight(self, request: InboundRequest) -> Optional[DispatchResult]:
        """Answer CORS preflight for paths with a CORS-enabled definition."""
        if self.definitions.resolve(request.path, "OPTIONS") is not None:
            return None
        candidates: List[EndpointDefinition] = self.store.definitions_for_path(request.path)
        requested = (request.headers.get("access-control-request-method") or "").upper()
        chosen = next((d for d in candidates if d.method == requested), None)
        if chosen is None and candidates:
            chosen = candidates[0]
        if chosen is None or not chosen.cors or not chosen.cors.enabled:
            return None
        if not origin_allowed(chosen, request.origin):
            return self._reject(ErrorKind.FORBIDDEN, "origin not allowed")
        methods = sorted({d.method for d in candidates} | {"OPTIONS"})
        return DispatchResult(200, None, cors_headers(chosen, request.origin, methods))

    def _check_auth(
        self, definition: EndpointDefinition, request: InboundRequest
    ) -> Optional[DispatchResult]:
        if not (definition.auth_required or definition.auth_permissions):
            return None
        if not request.identity:
            return self._reject(ErrorKind.UNAUTHENTICATED, "authentication required")
        missing = missing_permissions(request.identity, definition.auth_permissions)
        if missing:
            logger.warning(
                "custom_api_permission_denied",
                endpoint_id=definition.id,
                user_id=request.identity.get("id"),
                missing=missing,
            )
            return self._reject(
                ErrorKind.FORBIDDEN,
                "insufficient permissions",
                details={"missingPermissions": missing},
            )
        return None

    def _check_body(
        self, definition: EndpointDefinition, request: InboundRequest
    ) -> Optional[DispatchResult]:
        if not isinstance(request.body, (bytes, bytearray)) or not request.body:
            return None
        if is_json_media_type(request.content_type):
            # the web layer leaves undecodable JSON as raw bytes
            return self._reject(ErrorKind.VALIDATION, "request body is not valid JSON")
        if definition.request_schema:
            return self._reject(
                ErrorKind.VALIDATION,
                "request body must be application/json",
                code=415,
                details={"contentType": request.content_type},
            )
        return None

    async def _check_rate_limit(
        self, definition: EndpointDefinition, request: InboundRequest, headers: Dict[str, str]
    ) -> Optional[DispatchResult]:
        policy = definition.rate_limit
        if policy is None or not policy.enabled:
            return None
        key = rate_limit_key(definition, request)
        try:
            allowed, remaining, retry_after = await self.rate_limiter.check_rate_limit(
                key, policy.max_requests, policy.window_seconds
            )
        except Exception as exc:
            logger.error(
                "rate_limit_check_failed",
                endpoint_id=definition.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        headers["X-RateLimit-Limit"] = str(policy.max_requests)
        headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        if allowed:
            return None
        logger.info(
            "custom_api_rate_limited", endpoint_id=definition.id, retry_after=retry_after
        )
        rejection = self._reject(
            ErrorKind.RATE_LIMITED,
            "rate limit exceeded",
            details={"retryAfterSeconds": retry_after},
        )
        rejection.headers.update(headers)
        rejection.headers["Retry-After"] = str(retry_after)
        return rejection

    # ------------------------------------------------------------------
    # side effects
    # ------------------------------------------------------------------

    async def _cached_response(self, definition: EndpointDefinition, key: str) -> Optional[dict]:
        try:
            return await self.response_cache.get_response(definition.id, key)
        except Exception as exc:
            logger.error(
                "response_cache_read_failed", endpoint_id=definition.id, error=str(exc)
            )
            return None

    async def _store_response(self, definition: EndpointDefinition, key: str, body: dict) -> None:
        try:
            await self.response_cache.set_response(
                definition.id, key, body, definition.response_cache.ttl_seconds
            )
        except Exception as exc:
            logger.error(
                "response_cache_write_failed", endpoint_id=definition.id, error=str(exc)
            )

    def _record(self, definition: EndpointDefinition, latency_ns: int, *, failed: bool) -> None:
        try:
            self.store.record_invocation(definition.id, latency_ns, failed, utcnow())
        except Exception as exc:
            logger.error(
                "counter_update_failed",
                endpoint_id=definition.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    @staticmethod
    def _reject(
        kind: ErrorKind,
        message: str,
        *,
        code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        envelope = Envelope.failure(kind, message, code=code, details=details)
        return DispatchResult(envelope.status_code, envelope.to_wire(), {})
