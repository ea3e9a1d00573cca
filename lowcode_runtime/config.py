from __future__ import annotations

import json
import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from lowcode_runtime import __version__
from lowcode_runtime.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SANDBOX_MODULES = [
    "re",
    "statistics",
    "decimal",
    "fractions",
    "itertools",
    "functools",
    "collections",
    "textwrap",
    "uuid",
    "hashlib",
    "base64",
    "random",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings for the custom API runtime.

    Everything else (handler, policies, schemas) is configured per endpoint
    definition.
    """

    mount_prefix: str = env_field("/lowcode/custom", "CUSTOM_API_MOUNT_PREFIX")
    definition_cache_ttl_seconds: float = env_field(
        60.0,
        "DEFINITION_CACHE_TTL_SECONDS",
        description="How long a loaded endpoint definition is served from memory",
    )
    sandbox_timeout_ms: int = env_field(
        10000,
        "SANDBOX_TIMEOUT_MS",
        description="Wall-clock deadline for user_code handlers",
    )
    sandbox_max_memory_mb: int = env_field(256, "SANDBOX_MAX_MEMORY_MB")
    sandbox_module_allowlist: list[str] = env_field(
        DEFAULT_SANDBOX_MODULES,
        "SANDBOX_MODULE_ALLOWLIST",
        description="Modules a definition may opt into through allowedModules",
    )
    outbound_timeout_ms: int = env_field(30000, "OUTBOUND_HTTP_TIMEOUT_MS")
    outbound_user_agent: str = env_field(
        f"LowcodeCustomAPI/{__version__}", "OUTBOUND_USER_AGENT"
    )
    engine_timeout_ms: int = env_field(
        60000,
        "ENGINE_TIMEOUT_MS",
        description="Upper bound for any single invocation",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/lowcode", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks",
    )
    shared_fs_root: str = env_field("/srv/lowcode", "SHARED_FS_ROOT")
    workflow_service_url: str | None = env_field(None, "WORKFLOW_SERVICE_URL")
    entity_service_url: str | None = env_field(None, "ENTITY_SERVICE_URL")
    auth_static_tokens: dict[str, dict] = env_field(
        {},
        "AUTH_STATIC_TOKENS",
        description="JSON object mapping bearer tokens to identities",
    )
    formula_env: dict[str, Any] = env_field(
        {},
        "FORMULA_ENV",
        description="JSON object exposed to expressions as `env`",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("sandbox_module_allowlist", mode="before")
    @classmethod
    def _split_modules(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("auth_static_tokens", "formula_env", mode="before")
    @classmethod
    def _parse_json_object(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"expected a JSON object: {exc.msg}") from exc
            if not isinstance(parsed, dict):
                raise ValueError("expected a JSON object")
            return parsed
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("mount_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return value if value != "/" else ""

    @field_validator(
        "sandbox_timeout_ms", "outbound_timeout_ms", "engine_timeout_ms"
    )
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
