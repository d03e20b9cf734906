"""
matchpay/main.py
FastAPI application for the match payment lifecycle service
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from matchpay.config.feature_flags import feature_flags
from matchpay.config.settings import settings
from matchpay.database import AsyncSessionLocal, close_db, init_db
from matchpay.errors import (
    APIError,
    ErrorCode,
    from_domain_error,
    internal_error_response,
    rate_limited,
    validation_error,
)
from matchpay.exceptions import PaymentFlowError
from matchpay.integrations import build_notification_delivery, build_payment_capture
from matchpay.rate_limit import limiter
from matchpay.routes import match_payments
from matchpay.services.container import build_services
from matchpay.services.crash_recovery import startup_recovery
from matchpay.tasks.reminder_sweep import start_sweep_task

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    settings.validate()
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    services = build_services(AsyncSessionLocal, build_payment_capture(), build_notification_delivery())
    app.state.services = services
    await startup_recovery(services)

    sweep_task = None
    if feature_flags.FEATURE_REMINDER_SWEEP:
        sweep_task = start_sweep_task(services, settings.REMINDER_SWEEP_INTERVAL_SECONDS)
        logger.info("✅ Reminder sweep enabled")
    else:
        logger.info("⏸️ Reminder sweep disabled (set FEATURE_REMINDER_SWEEP=True to enable)")

    yield

    logger.info("Shutting down application...")
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    try:
        await services.close()
        await close_db()
        logger.info("Database connection closed")
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return rate_limited(exc.detail).to_response()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Match Payments API",
        description="Quorum-gated payment lifecycle for pay-to-play matches",
        version=VERSION,
        docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
        redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
        lifespan=lifespan
    )

    # Attach rate limiter to the app
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return validation_error(exc.errors()).to_response()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")
        code = ErrorCode.NOT_FOUND if exc.status_code == 404 else ErrorCode.INVALID_INPUT
        return APIError(exc.status_code, str(exc.detail), code).to_response()

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        logger.warning(f"API error on {request.url.path}: {exc.code} - {exc.message}")
        return exc.to_response()

    @app.exception_handler(PaymentFlowError)
    async def payment_flow_error_handler(request: Request, exc: PaymentFlowError):
        logger.warning(f"Payment flow error on {request.url.path}: {exc.code} - {exc.message}")
        return from_domain_error(exc).to_response()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        return internal_error_response(exc, request.url.path)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "environment": settings.ENVIRONMENT,
            "version": VERSION,
            "features": feature_flags.get_all_flags(),
        }

    app.include_router(match_payments.router)
    return app


app = create_app()
