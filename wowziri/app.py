from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wowziri.api.error_handling import register_exception_handlers
from wowziri.api.routes import router
from wowziri.config import get_settings
from wowziri.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from wowziri.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", deployment_mode=runtime.settings.deployment_mode.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Wowziri API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    origins = [
        _settings.app_base_url,
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]
    return list(dict.fromkeys(origins))


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID, generating one if absent."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


_BASE_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
_HSTS = "max-age=63072000; includeSubDomains"


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    headers = dict(_BASE_SECURITY_HEADERS)
    # token-bearing responses must not be cached
    if request.url.path.startswith("/api/auth/"):
        headers["Cache-Control"] = "no-store"
    if request.url.scheme == "https" and _settings.is_production:
        headers["Strict-Transport-Security"] = _HSTS
    for name, value in headers.items():
        response.headers.setdefault(name, value)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health", tags=["health"])
async def health():
    from wowziri.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = type(runtime.store).__name__
    try:
        runtime.store.verify_connection()
    except Exception as exc:
        logger.error("health_store_unavailable", store=store_type, error=str(exc))
        return JSONResponse(status_code=503, content={"status": "degraded", "store": store_type})
    return {"status": "ok", "store": store_type}
