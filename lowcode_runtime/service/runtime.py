from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from lowcode_runtime.config import get_settings, reset_settings_cache
from lowcode_runtime.logging import get_logger
from lowcode_runtime.service.auth import AuthService, StaticTokenValidator
from lowcode_runtime.service.definition_cache import DefinitionCache
from lowcode_runtime.service.dispatcher import RequestDispatcher
from lowcode_runtime.service.engine import ExecutionEngine
from lowcode_runtime.service.entities import EntityGateway, HttpEntityService, MemoryEntityService
from lowcode_runtime.service.outbound import OutboundHttpClient
from lowcode_runtime.service.policies import LocalRateLimiter, LocalResponseCache
from lowcode_runtime.service.sandbox import SandboxExecutor
from lowcode_runtime.service.workflow import (
    HttpWorkflowEngine,
    InProcessWorkflowEngine,
    WorkflowGateway,
)
from lowcode_runtime.storage.memory import MemoryDefinitionStore
from lowcode_runtime.storage.postgres import PostgresDefinitionStore
from lowcode_runtime.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryDefinitionStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresDefinitionStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.definitions = DefinitionCache(
            self.store, ttl_seconds=self.settings.definition_cache_ttl_seconds
        )
        self.store.add_mutation_hook(self.definitions.invalidate)

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for endpoint rate limits and response caching; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and "
                    "cached responses are per-process only."
                ),
                mode=fallback_mode,
            )
        self.rate_limiter = self.cache or LocalRateLimiter()
        self.response_cache = self.cache or LocalResponseCache()

        self.auth = AuthService(StaticTokenValidator(self.settings.auth_static_tokens))
        self.sandbox = SandboxExecutor(
            module_allowlist=self.settings.sandbox_module_allowlist,
            default_timeout_ms=self.settings.sandbox_timeout_ms,
            max_memory_mb=self.settings.sandbox_max_memory_mb,
        )
        self.outbound = OutboundHttpClient(
            user_agent=self.settings.outbound_user_agent,
            default_timeout_ms=self.settings.outbound_timeout_ms,
        )
        if self.settings.workflow_service_url:
            self.workflow_engine = HttpWorkflowEngine(
                self.settings.workflow_service_url,
                user_agent=self.settings.outbound_user_agent,
            )
        else:
            self.workflow_engine = InProcessWorkflowEngine()
        if self.settings.entity_service_url:
            self.entity_service = HttpEntityService(self.settings.entity_service_url)
        else:
            self.entity_service = MemoryEntityService()

        self.engine = ExecutionEngine(
            sandbox=self.sandbox,
            outbound=self.outbound,
            workflows=WorkflowGateway(self.workflow_engine),
            entities=EntityGateway(self.entity_service),
            engine_timeout_ms=self.settings.engine_timeout_ms,
            formula_env=self.settings.formula_env,
        )
        self.dispatcher = RequestDispatcher(
            definitions=self.definitions,
            engine=self.engine,
            rate_limiter=self.rate_limiter,
            response_cache=self.response_cache,
        )

        logger.info(
            "runtime_initialized",
            mount_prefix=self.settings.mount_prefix,
            redis_enabled=self.cache is not None,
            workflow_engine=type(self.workflow_engine).__name__,
            entity_service=type(self.entity_service).__name__,
            definitions=len(self.store.list()),
        )

    async def purge_responses(self, definition_id: Optional[str] = None) -> int:
        removed = await self.response_cache.purge_responses(definition_id)
        logger.info(
            "response_cache_purged", definition_id=definition_id or "*", removed=removed
        )
        return removed

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a second check under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _close_quietly(old: Runtime) -> None:
    try:
        if isinstance(old.cache, SyncRedisCache):
            old.cache.client.close()
        elif old.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(old.cache.close())
            except RuntimeError:
                asyncio.run(old.cache.close())
        old.store.close()
    except Exception as exc:
        logger.warning("runtime_close_failed", error_type=type(exc).__name__, error=str(exc))
