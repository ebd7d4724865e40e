from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from aegis.api.error_handling import register_exception_handlers
from aegis.api.routes import router
from aegis.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the refresh-token purge worker and release the store on shutdown."""
    from aegis.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.token_purger is not None:
        await runtime.token_purger.start()

    yield

    try:
        if runtime.token_purger is not None:
            await runtime.token_purger.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Aegis", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with an X-Request-ID for log correlation.

    A client-supplied header is reused; otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    from aegis.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": "ok"}
    healthy = True
    if hasattr(runtime.store, "_connect"):
        try:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["store"] = "unavailable"
            healthy = False
    purger = runtime.token_purger
    checks["token_purger"] = "running" if purger is not None and purger.running else "stopped"
    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
