from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from kitchguard.api.error_handling import register_exception_handlers
from kitchguard.api.routes import router
from kitchguard.config import Settings, get_settings
from kitchguard.logging import bind_request_context, get_logger, set_correlation_id
from kitchguard.service.runtime import Runtime, get_runtime
from kitchguard.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application with its own service graph.

    Run with ``uvicorn --factory kitchguard.app:create_app``.
    """
    runtime = runtime or Runtime(settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_startup", version=__version__)
        yield
        try:
            await asyncio.to_thread(runtime.close)
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="KitchGuard API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag each request with X-Request-ID for log correlation.

        A client-supplied header is reused; otherwise a new UUID is generated.
        """
        bind_request_context(request.client.host if request.client else None)
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Tokens and account data must never sit in shared caches
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and runtime.settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(rt: Runtime = Depends(get_runtime)):
        """Liveness plus a bounded store probe."""
        checks: Dict[str, Dict[str, Any]] = {}
        try:
            await asyncio.wait_for(
                asyncio.to_thread(rt.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            store_ok = True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            store_ok = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False
        checks["store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": "memory" if rt.settings.use_memory_store else "postgres",
        }
        body = {
            "status": "healthy" if store_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": utcnow().isoformat(),
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    logger.info(
        "app_created",
        store_type="memory" if runtime.settings.use_memory_store else "postgres",
        test_mode=runtime.settings.test_mode,
    )
    return app
