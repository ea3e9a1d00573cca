from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

HANDLER_KINDS = ("formula", "external_http", "workflow", "user_code", "entity_op")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
RATE_LIMIT_KEYING = ("ip", "identity", "identity_or_ip")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_path(path: str) -> str:
    """Canonical form used for index keys: leading slash, no trailing slash."""
    cleaned = "/" + (path or "").strip().strip("/")
    return cleaned


@dataclass(frozen=True)
class CorsPolicy:
    enabled: bool = False
    allowed_origins: Tuple[str, ...] = ("*",)
    allowed_methods: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["CorsPolicy"]:
        if not data:
            return None
        origins = data.get("allowedOrigins")
        return cls(
            enabled=bool(data.get("enabled", False)),
            allowed_origins=("*",) if origins is None else tuple(origins),
            allowed_methods=tuple(m.upper() for m in data.get("allowedMethods") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "allowedOrigins": list(self.allowed_origins),
            "allowedMethods": list(self.allowed_methods),
        }


@dataclass(frozen=True)
class RateLimitPolicy:
    enabled: bool = False
    window_seconds: int = 60
    max_requests: int = 100
    keying_policy: str = "ip"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RateLimitPolicy"]:
        if not data:
            return None
        window = data.get("windowSeconds")
        if window is None and data.get("windowMs") is not None:
            window = max(1, int(data["windowMs"]) // 1000)
        keying = data.get("keyingPolicy") or "ip"
        if keying not in RATE_LIMIT_KEYING:
            raise ValueError(f"unknown rate limit keying policy '{keying}'")
        return cls(
            # An explicit window means the limiter is wanted unless switched off
            enabled=bool(data.get("enabled", True)),
            window_seconds=int(window if window is not None else 60),
            max_requests=int(data.get("maxRequests", 100)),
            keying_policy=keying,
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "windowSeconds": self.window_seconds,
            "maxRequests": self.max_requests,
            "keyingPolicy": self.keying_policy,
        }


@dataclass(frozen=True)
class ResponseCachePolicy:
    enabled: bool = False
    ttl_seconds: int = 300
    vary_on: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ResponseCachePolicy"]:
        if not data:
            return None
        ttl = data.get("ttlSeconds", data.get("ttl", 300))
        vary = data.get("varyOn")
        return cls(
            enabled=bool(data.get("enabled", False)),
            ttl_seconds=int(ttl),
            vary_on=tuple(vary) if vary is not None else None,
        )

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "ttlSeconds": self.ttl_seconds,
            "varyOn": list(self.vary_on) if self.vary_on is not None else None,
        }


@dataclass(frozen=True)
class EndpointDefinition:
    """Immutable snapshot of one runtime-dispatched endpoint.

    Counters are deliberately not part of the snapshot; see
    :class:`EndpointCounters`.
    """

    id: str
    path: str
    method: str
    handler_kind: str
    handler_config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    name: Optional[str] = None
    description: Optional[str] = None
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None
    auth_required: bool = False
    auth_permissions: Tuple[str, ...] = ()
    cors: Optional[CorsPolicy] = None
    rate_limit: Optional[RateLimitPolicy] = None
    response_cache: Optional[ResponseCachePolicy] = None
    application_id: Optional[str] = None
    timeout_ms: Optional[int] = None
    category: str = "custom"
    tags: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def version(self) -> str:
        return self.updated_at.isoformat()

    @property
    def is_templated(self) -> bool:
        return "{" in self.path

    def touched(self, **changes: Any) -> "EndpointDefinition":
        return replace(self, updated_at=utcnow(), **changes)

    @classmethod
    def from_dict(cls, data: dict) -> "EndpointDefinition":
        """Build a snapshot from the camelCase wire/persistence form."""
        auth = data.get("authentication") or {}
        auth_required = data.get("authRequired", auth.get("required", False))
        permissions = data.get("authPermissions", auth.get("permissions") or ())
        kind = data.get("handlerKind") or data.get("handlerType")
        now = utcnow()
        timeout_ms = data.get("timeoutMillis")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            path=normalize_path(data["path"]),
            method=str(data.get("method", "GET")).upper(),
            handler_kind=str(kind),
            handler_config=copy.deepcopy(data.get("handlerConfig") or {}),
            enabled=bool(data.get("enabled", True)),
            name=data.get("name") or data.get("displayName"),
            description=data.get("description"),
            request_schema=copy.deepcopy(data.get("requestSchema")) or None,
            response_schema=copy.deepcopy(data.get("responseSchema")) or None,
            auth_required=bool(auth_required),
            auth_permissions=tuple(permissions or ()),
            cors=CorsPolicy.from_dict(data.get("cors")),
            rate_limit=RateLimitPolicy.from_dict(data.get("rateLimit")),
            response_cache=ResponseCachePolicy.from_dict(
                data.get("responseCache", data.get("cache"))
            ),
            application_id=data.get("applicationId"),
            timeout_ms=int(timeout_ms) if timeout_ms is not None else None,
            category=data.get("category") or "custom",
            tags=tuple(data.get("tags") or ()),
            created_at=_parse_ts(data.get("createdAt")) or now,
            updated_at=_parse_ts(data.get("updatedAt")) or now,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "method": self.method,
            "enabled": self.enabled,
            "name": self.name,
            "description": self.description,
            "handlerKind": self.handler_kind,
            "handlerConfig": copy.deepcopy(self.handler_config),
            "requestSchema": copy.deepcopy(self.request_schema),
            "responseSchema": copy.deepcopy(self.response_schema),
            "authRequired": self.auth_required,
            "authPermissions": list(self.auth_permissions),
            "cors": self.cors.to_dict() if self.cors else None,
            "rateLimit": self.rate_limit.to_dict() if self.rate_limit else None,
            "responseCache": self.response_cache.to_dict() if self.response_cache else None,
            "applicationId": self.application_id,
            "timeoutMillis": self.timeout_ms,
            "category": self.category,
            "tags": list(self.tags),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class EndpointCounters:
    """Monotonic per-endpoint accounting, kept apart from the definition."""

    call_count: int = 0
    error_count: int = 0
    total_latency_ns: int = 0
    last_invoked_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        avg_ms = (
            self.total_latency_ns / self.call_count / 1_000_000 if self.call_count else 0.0
        )
        return {
            "callCount": self.call_count,
            "errorCount": self.error_count,
            "totalLatencyNs": self.total_latency_ns,
            "lastInvokedAt": self.last_invoked_at.isoformat() if self.last_invoked_at else None,
            "averageLatencyMillis": round(avg_ms, 3),
            "errorRate": round(self.error_count / self.call_count, 4) if self.call_count else 0.0,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EndpointCounters":
        return cls(
            call_count=int(data.get("callCount", 0)),
            error_count=int(data.get("errorCount", 0)),
            total_latency_ns=int(data.get("totalLatencyNs", 0)),
            last_invoked_at=_parse_ts(data.get("lastInvokedAt")),
        )


@dataclass
class InboundRequest:
    """Parsed HTTP request handed to the dispatcher by the web layer."""

    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    content_type: Optional[str] = None
    client_ip: Optional[str] = None
    identity: Optional[dict] = None
    params: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in (self.headers or {}).items()}

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")

    @property
    def origin(self) -> Optional[str]:
        return self.headers.get("origin")

    def payload(self) -> dict:
        return {
            "body": self.body,
            "query": dict(self.query),
            "params": dict(self.params),
            "headers": dict(self.headers),
        }


@dataclass
class ExecutionContext:
    """Per-invocation data bag passed to handlers and expressions."""

    endpoint_id: str
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: Optional[str] = None
    user: Optional[dict] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        if not self.user:
            return None
        value = self.user.get("id")
        return str(value) if value is not None else None

    def as_dict(self) -> dict:
        data = {
            "endpointId": self.endpoint_id,
            "executionId": self.execution_id,
            "tenantId": self.tenant_id,
            "user": copy.deepcopy(self.user),
            "clientIp": self.client_ip,
            "userAgent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
        }
        data.update(copy.deepcopy(self.extra))
        return data
