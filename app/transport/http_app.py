# app/transport/http_app.py
"""
HTTP surface for the resolver.

Endpoints:
1. Public: GET / (service info), GET /health (liveness), POST /download
2. Protected: GET /status (metrics token or internal network)
3. Dev-only: POST /dev/metrics/reset
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.resolver import DownloadOrchestrator, UrlNormalizer
from app.infra.backoff import BackoffTracker
from app.infra.extractors import build_default_strategy_sets
from app.infra.kv_store import create_store
from app.infra.logging_config import setup_logging, get_logger, shorten_url
from app.infra.process_runner import ProcessRunner
from app.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from app.infra.result_cache import ResultCache
from app.infra.stampede import StampedeGuard
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.schemas import DownloadIn, DownloadOut, DownloadErrorOut
from app.transport.security import (
    require_dev_environment,
    require_metrics_auth,
    get_client_ip,
    SecurityHeaders,
)

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_orchestrator(request: Request) -> DownloadOrchestrator:
    """Get orchestrator from app state"""
    return request.app.state.orchestrator


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for /download"""
    limiter_dep = request.app.state.rate_limiter
    await limiter_dep(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# WIRING
# ============================================================================

def build_orchestrator(store) -> DownloadOrchestrator:
    """Compose cache, backoff, stampede guard and tools from settings"""
    cookies_dir = Path(settings.cookies_path).parent
    cookies_dir.mkdir(parents=True, exist_ok=True)

    return DownloadOrchestrator(
        strategy_sets=build_default_strategy_sets(settings, ProcessRunner()),
        cache=ResultCache(store, default_ttl_seconds=settings.cache_ttl_seconds),
        backoff=BackoffTracker(base_ms=settings.backoff_base_ms, max_ms=settings.backoff_max_ms),
        guard=StampedeGuard(),
        normalizer=UrlNormalizer(settings.host_list),
        cache_ttl_seconds=settings.cache_ttl_seconds,
        service_name=settings.service_name,
    )


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(f"Starting application: env={settings.app_env}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    store = None
    if getattr(fastapi_app.state, "orchestrator", None) is None:
        store = create_store(settings.cache_backend, settings.redis_url)
        fastapi_app.state.orchestrator = build_orchestrator(store)

    if getattr(fastapi_app.state, "rate_limiter", None) is None:
        fastapi_app.state.rate_limiter = RateLimitDependency(
            InMemoryRateLimiter(max_requests=settings.rate_limit_per_minute, window_seconds=60),
            client_ip=get_client_ip,
        )

    tools = [s.name for s in fastapi_app.state.orchestrator.strategy_sets]
    logger.info(f"Application startup complete: tools={tools}")

    yield

    logger.info("Shutting down application")
    if store is not None:
        await store.close()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title="Media Link Resolver",
        description="Resolves post/reel/story URLs to direct media URLs",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(SecurityHeadersMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    # Outermost: request id must exist before logging/error handling run
    fastapi_app.add_middleware(RequestIDMiddleware)

    _register_routes(fastapi_app)
    return fastapi_app


def _register_routes(fastapi_app: FastAPI) -> None:

    @fastapi_app.get("/")
    async def root(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
        return {
            "ok": True,
            "service": orchestrator.service_name,
            "tools": [s.name for s in orchestrator.strategy_sets],
        }

    @fastapi_app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @fastapi_app.get("/status", dependencies=[Depends(require_metrics_auth)])
    async def status_endpoint(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
        return await orchestrator.health_status()

    @fastapi_app.post(
        "/download",
        dependencies=[Depends(rate_limit_check)],
        responses={
            200: {"model": DownloadOut},
            400: {"model": DownloadErrorOut},
            429: {"model": DownloadErrorOut},
            500: {"model": DownloadErrorOut},
        },
    )
    async def download(
        body: DownloadIn,
        request: Request,
        orchestrator: DownloadOrchestrator = Depends(get_orchestrator),
    ):
        target = body.target
        if not target:
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": "Missing reelURL parameter",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )

        request_id = getattr(request.state, "request_id", None)
        logger.info(
            f"Download request received: url={shorten_url(target)}",
            extra={"request_id": request_id},
        )

        result = await orchestrator.download(target, request_id=request_id)
        return JSONResponse(
            status_code=200 if result.success else result.status_hint,
            content=result.to_payload(),
        )

    @fastapi_app.post("/dev/metrics/reset", dependencies=[Depends(require_dev_environment())])
    async def reset_metrics(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
        orchestrator.reset_metrics()
        return {"ok": True}


app = create_app()
