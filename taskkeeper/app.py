from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from taskkeeper.api.error_handling import register_exception_handlers
from taskkeeper.api.routes import router
from taskkeeper.config import Settings
from taskkeeper.logging import get_logger, set_correlation_id
from taskkeeper.service.runtime import Runtime
from taskkeeper.storage.memory import MemoryStore

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime_factory=Runtime,
) -> FastAPI:
    """Build the application; the runtime is created when the lifespan starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = runtime_factory(settings)
        app.state.runtime = runtime
        await runtime.start()
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            try:
                await runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)

    app = FastAPI(title="Taskkeeper", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with X-Request-ID (or a fresh UUID) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        runtime: Runtime = request.app.state.runtime
        return {
            "status": "healthy",
            "version": __version__,
            "store": "memory" if isinstance(runtime.store, MemoryStore) else "surrealdb",
            "cleanup_worker": runtime.cleanup_worker.running,
        }

    return app


app = create_app()
