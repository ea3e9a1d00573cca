from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from lowcode_runtime import __version__
from lowcode_runtime.api import custom
from lowcode_runtime.api.error_handling import register_exception_handlers
from lowcode_runtime.api.routes import router
from lowcode_runtime.config import Settings
from lowcode_runtime.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from lowcode_runtime.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        logger.info(
            "custom_api_ready",
            mount_prefix=runtime.settings.mount_prefix,
            definitions=len(runtime.store.list(enabled_only=True)),
        )
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Lowcode Custom API Runtime", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for structured logging.

    Taken from ``X-Request-ID`` when the client sends one, otherwise a fresh
    UUID, and echoed back in the same response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(custom.router, prefix=_settings.mount_prefix)
