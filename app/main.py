# app/main.py
from __future__ import annotations

import uuid
from typing import Dict, Optional

from dotenv import load_dotenv
load_dotenv(dotenv_path=".env")
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# --- Logging & request-id ---
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from api.routers.content import router as content_router
from app.config import Settings, get_settings
from app.core.logging import configure_logging, logger
from app.core.request_id import clear_request_id, set_request_id
from services.cache_orchestrator import CacheOrchestrator, build_orchestrator
from services.refresh_scheduler import RefreshScheduler

configure_logging(service_name="api")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        set_request_id(req_id)
        logger.info("request_started", method=request.method, path=str(request.url.path))
        try:
            response: StarletteResponse = await call_next(request)
        except Exception as exc:
            logger.error("request_exception", error=str(exc.__class__.__name__))
            clear_request_id()
            raise
        logger.info("request_ended", status_code=response.status_code)
        response.headers["X-Request-Id"] = req_id
        clear_request_id()
        return response


def create_app(
    settings: Optional[Settings] = None,
    *,
    orchestrator: Optional[CacheOrchestrator] = None,
    scheduler: Optional[RefreshScheduler] = None,
) -> FastAPI:
    settings = settings or get_settings()
    orchestrator = orchestrator or build_orchestrator(settings)
    scheduler = scheduler or RefreshScheduler(
        orchestrator,
        interval_seconds=settings.REFRESH_INTERVAL_SECONDS,
        run_on_start=settings.REFRESH_ON_STARTUP,
    )

    app = FastAPI(
        title="Feedhub - Content Cache Backend",
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    allowed_origins = list(settings.CORS_ALLOWED_ORIGINS)

    def _cors_headers(origin: Optional[str]) -> Dict[str, str]:
        if origin and origin in allowed_origins:
            return {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Credentials": "true",
                "Vary": "Origin",
            }
        return {}

    @app.on_event("startup")
    async def _start_scheduler() -> None:
        scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown_cleanup() -> None:
        await scheduler.stop()
        await orchestrator.close()

    # CORS first = outermost middleware, so error responses carry the headers too.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "HEAD", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "X-Request-Id"],
    )
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        headers = dict(exc.headers or {})
        headers.update(_cors_headers(request.headers.get("origin")))
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_exception", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
            headers=_cors_headers(request.headers.get("origin")),
        )

    @app.get("/health")
    async def health():
        return {"ok": True, "keys": orchestrator.keys, "scheduler_running": scheduler.running}

    app.include_router(content_router)
    logger.info("routers_registered", routers=["content"], keys=orchestrator.keys)
    return app


app = create_app()
