from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.config import Settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP app.

    A prebuilt ``runtime`` is used as-is and left open on shutdown so callers
    (tests, embedding applications) keep ownership of it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or Runtime.build(settings or Settings.from_env())
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
            logger.info("app_stopped")

    app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)
    if runtime is not None:
        # Available even when the lifespan is not run
        app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
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

    @app.get("/healthz", tags=["ops"])
    async def healthz(request: Request):
        rt: Runtime = request.app.state.runtime
        return {
            "status": "ok",
            "version": __version__,
            "store": rt.settings.store_strategy.value,
            "login_guard_degraded": rt.guard.degraded,
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app
