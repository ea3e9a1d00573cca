from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from lowcode_runtime.service.errors import ErrorKind, status_for_kind
from lowcode_runtime.storage.models import HANDLER_KINDS, HTTP_METHODS

# Maximum nested JSON depth accepted in handler configuration
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# ENVELOPE
# ============================================================================


class ErrorBody(_CamelModel):
    """Failure half of the execution envelope."""

    message: str
    kind: ErrorKind
    code: int = Field(..., description="HTTP status the kind maps to")
    sub_kind: Optional[str] = None
    details: Optional[Any] = None


class Envelope(_CamelModel):
    """Uniform result shape for custom endpoints and the admin surface."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    execution_id: str = Field(default_factory=lambda: str(uuid4()))
    response_time_millis: float = 0.0
    timestamp: str = Field(default_factory=_utc_iso)

    @classmethod
    def ok(cls, data: Any, **fields: Any) -> "Envelope":
        return cls(success=True, data=data, **fields)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind | str,
        message: str,
        *,
        sub_kind: Optional[str] = None,
        details: Optional[Any] = None,
        code: Optional[int] = None,
        **fields: Any,
    ) -> "Envelope":
        kind = ErrorKind(kind)
        error = ErrorBody(
            message=message,
            kind=kind,
            code=code or status_for_kind(kind),
            sub_kind=sub_kind,
            details=details or None,
        )
        return cls(success=False, error=error, **fields)

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return self.error.code if self.error else 500

    def to_wire(self) -> dict:
        payload = self.model_dump(by_alias=True, mode="json")
        if self.success:
            payload.pop("error", None)
        else:
            payload.pop("data", None)
            error = payload.get("error") or {}
            for key in ("subKind", "details"):
                if error.get(key) is None:
                    error.pop(key, None)
        return payload


# ============================================================================
# ADMIN REQUESTS
# ============================================================================


class CorsPayload(_CamelModel):
    enabled: bool = True
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    allowed_methods: List[str] = Field(default_factory=list)


class RateLimitPayload(_CamelModel):
    enabled: bool = True
    window_seconds: int = Field(60, gt=0, le=86400)
    max_requests: int = Field(100, gt=0)
    keying_policy: Literal["ip", "identity", "identity_or_ip"] = "ip"


class ResponseCachePayload(_CamelModel):
    enabled: bool = True
    ttl_seconds: int = Field(300, gt=0, le=86400)
    vary_on: Optional[List[str]] = None


class EndpointDefinitionRequest(_CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )

    id: Optional[str] = Field(None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$")
    path: str = Field(..., min_length=1, max_length=512)
    method: str = "GET"
    enabled: bool = True
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=4000)
    handler_kind: str
    handler_config: Dict[str, Any] = Field(default_factory=dict)
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None
    auth_required: bool = False
    auth_permissions: List[str] = Field(default_factory=list)
    cors: Optional[CorsPayload] = None
    rate_limit: Optional[RateLimitPayload] = None
    response_cache: Optional[ResponseCachePayload] = None
    application_id: Optional[str] = None
    timeout_millis: Optional[int] = Field(None, gt=0, le=600000)
    category: str = "custom"
    tags: List[str] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        if "?" in value or "#" in value:
            raise ValueError("path must not contain a query or fragment")
        return value

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        upper = value.upper()
        if upper not in HTTP_METHODS:
            raise ValueError(f"method must be one of {', '.join(HTTP_METHODS)}")
        return upper

    @field_validator("handler_kind")
    @classmethod
    def _known_kind(cls, value: str) -> str:
        if value not in HANDLER_KINDS:
            raise ValueError(f"handlerKind must be one of {', '.join(HANDLER_KINDS)}")
        return value

    @field_validator("handler_config")
    @classmethod
    def _bounded_config(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value

    @field_validator("request_schema", "response_schema")
    @classmethod
    def _valid_schema(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        _validate_json_depth(value)
        try:
            Draft202012Validator.check_schema(value)
        except SchemaError as exc:
            raise ValueError(f"invalid JSON schema: {exc.message}") from exc
        return value

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class TestInvocationRequest(_CamelModel):
    __test__ = False  # keep pytest from collecting this model

    body: Any = None
    query: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)


class CacheInvalidateRequest(_CamelModel):
    endpoint_id: Optional[str] = None
