"""
Main FastAPI application
Entry point for the Copy Trading Engine API
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager
import logging

from copytrade.core.config import settings
from copytrade.core.security import limiter, get_security_headers
from copytrade.core.database import async_session_maker, init_db, close_db
from copytrade.core.redis import init_redis, get_redis_client, close_redis
from copytrade.services.batch_executor import build_batch_executor, build_chain_client
from copytrade.services.copy_engine import CopyEngine
from copytrade.services.delegation_service import DelegationService
from copytrade.services.delegation_validator import DelegationValidator
from copytrade.services.event_router import EventRouter
from copytrade.services.ledger import LedgerReconciler
from copytrade.services.match_service import MatchService

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ============================================================================
# LIFESPAN CONTEXT MANAGER
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Copy Trading Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    # Initialize Redis via shared module
    try:
        await init_redis(settings.REDIS_URL)
        logger.info("Redis connected")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")

    await init_db()

    if not settings.ENVIO_WEBHOOK_SECRET:
        if settings.ENVIRONMENT == "production":
            logger.error("ENVIO_WEBHOOK_SECRET is not set; every webhook will be rejected")
        else:
            logger.warning("ENVIO_WEBHOOK_SECRET is not set; webhook signatures are NOT checked")

    chain = build_chain_client()
    validator = DelegationValidator(async_session_maker, chain)
    delegation_service = DelegationService(async_session_maker, validator)
    match_service = MatchService(async_session_maker, delegation_service)

    # Copy trading needs the relayer; lifecycle events are handled without it
    executor = None
    copy_engine = None
    try:
        executor = build_batch_executor(chain)
        copy_engine = CopyEngine(
            async_session_maker,
            delegation_service,
            validator,
            executor,
            LedgerReconciler(async_session_maker),
        )
        logger.info(f"Relayer {executor.relayer.address} ready on chain {settings.CHAIN_ID}")
    except Exception as e:
        logger.error(f"Copy trading disabled: {e}")

    app.state.delegation_service = delegation_service
    app.state.match_service = match_service
    app.state.copy_engine = copy_engine
    app.state.event_router = EventRouter(match_service, delegation_service, copy_engine)

    logger.info("Application startup complete")

    yield  # Application runs here

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down Copy Trading Engine API")

    if executor:
        await executor.bundler.aclose()
        logger.info("Bundler client closed")

    await close_redis()
    logger.info("Redis connection closed")

    await close_db()
    logger.info("Database connections closed")

    logger.info("Shutdown complete")

# ============================================================================
# CREATE FASTAPI APP
# ============================================================================

app = FastAPI(
    title="Copy Trading Engine API",
    description="Delegation-based copy-trade execution for leader/follower matches",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)

# Add rate limiter
app.state.limiter = limiter

# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", settings.WEBHOOK_SIGNATURE_HEADER],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for key, value in get_security_headers().items():
        response.headers[key] = value
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded. Please try again later.",
            "retry_after": getattr(exc, "retry_after", None)
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error": str(exc),
                "type": type(exc).__name__
            }
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

# ============================================================================
# ROOT ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    return {
        "message": "Copy Trading Engine API",
        "version": "1.0.0",
        "status": "operational",
        "copy_trading": "enabled" if getattr(app.state, "copy_engine", None) else "disabled",
        "redis_status": "connected" if get_redis_client() else "disconnected"
    }

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "services": {
            "redis": "up" if get_redis_client() else "down",
            "relayer": "up" if getattr(app.state, "copy_engine", None) else "down"
        }
    }

# ============================================================================
# API ROUTES
# ============================================================================

from copytrade.api import webhooks, delegations, matches

app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(delegations.router, prefix="/delegations", tags=["Delegations"])
app.include_router(matches.router, prefix="/matches", tags=["Matches"])

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "copytrade.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
