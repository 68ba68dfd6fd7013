from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from academic_portal.api.error_handling import register_exception_handlers
from academic_portal.api.routes import router
from academic_portal.config import Settings
from academic_portal.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; flush pending notifications on shutdown."""
    from academic_portal.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await asyncio.wait_for(runtime.notifications.drain(), timeout=10)
    except asyncio.TimeoutError:
        logger.warning("notification_drain_timeout", pending=runtime.notifications.pending)
    logger.info("app_stopped")


app = FastAPI(title="Academic Portal Identity", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # avoid wildcard since credentials (refresh cookie) are allowed
    return _settings.cors_allow_origins or ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID (or a fresh uuid) into log context and response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Liveness plus an identity-store connectivity probe."""
    from academic_portal.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        db_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False

    body: Dict[str, Any] = {
        "status": "healthy" if db_ok else "unhealthy",
        "version": __version__,
        "checks": {"database": {"status": "healthy" if db_ok else "unhealthy"}},
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


def create_app() -> FastAPI:
    return app


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "academic_portal.app:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )
