from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from cobaltauth.api.error_handling import register_exception_handlers
from cobaltauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from cobaltauth.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    """Build the ASGI app that hosts the auth dependencies and error envelope."""
    app = FastAPI(title="Cobalt Auth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        # Honour a client-supplied X-Request-ID so logs line up across hops
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    return app


app = create_app()
