import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from api.routes import auth
from config import AppMode, Settings, get_settings
from db.database import init_db
from middleware.authentication import BearerAuthenticationMiddleware
from middleware.logging import RequestLoggingMiddleware
from middleware.rate_limit import RateLimiter, RateLimitMiddleware, parse_trusted_proxies
from middleware.token_blacklist import TokenBlacklistMiddleware
from schemas.common import HealthResponse, error_body
from services.blacklist import create_blacklist
from services.email import EmailService, LoggingEmailService
from services.error_sanitizer import format_validation_errors, sanitize_public_error_message
from services.exceptions import AppException
from services.keys import SigningKeyPair
from services.store import KeyValueStore, create_store
from services.tokens import TokenService

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

_HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "INVALID_TOKEN",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Quiet noisy loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    settings: Settings = app.state.settings

    # === STARTUP ===
    logger.info(f"Starting ArenaOps auth service in {settings.APP_MODE.value} mode...")

    await init_db()
    logger.info("Database initialized")

    await app.state.blacklist.start()
    auth.start_cleanup_task(app)

    yield

    # === SHUTDOWN ===
    auth.stop_cleanup_task()
    await app.state.blacklist.stop()
    await app.state.store.close()
    logger.info("Shutting down ArenaOps auth service...")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body("VALIDATION_ERROR", format_validation_errors(exc.errors())),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
        message = sanitize_public_error_message(str(exc.detail), fallback="Request failed") or "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code, message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("INTERNAL_ERROR", "An unexpected error occurred."),
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    key_pair: Optional[SigningKeyPair] = None,
    store: Optional[KeyValueStore] = None,
    email_service: Optional[EmailService] = None,
) -> FastAPI:
    """
    Build the application and its long-lived services.

    The signing key is loaded (or generated) here, so a key bootstrap failure
    aborts startup.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    key_pair = key_pair or SigningKeyPair.load_or_create(settings.JWT_KEY_FILE_PATH)
    token_service = TokenService.from_settings(key_pair, settings)
    store = store or create_store(settings)
    blacklist = create_blacklist(settings, store)
    rate_limiter = RateLimiter.from_settings(store, settings)

    app = FastAPI(
        title="ArenaOps Auth Service",
        description="Authentication, token issuance and revocation for ArenaOps",
        version=APP_VERSION,
        lifespan=lifespan,
        debug=settings.DEBUG,
    )

    app.state.settings = settings
    app.state.key_pair = key_pair
    app.state.token_service = token_service
    app.state.store = store
    app.state.blacklist = blacklist
    app.state.rate_limiter = rate_limiter
    app.state.trusted_proxies = parse_trusted_proxies(settings.TRUSTED_PROXIES)
    app.state.email_service = email_service or LoggingEmailService()

    register_exception_handlers(app)

    # Middleware order matters - last added = first executed
    # 1. Blacklist check - needs the principal set by authentication
    app.add_middleware(TokenBlacklistMiddleware, blacklist=blacklist)

    # 2. Rate limiting - partitions authenticated callers by user id
    app.add_middleware(RateLimitMiddleware, rate_limiter=rate_limiter)

    # 3. Bearer authentication - validates the access token once per request
    app.add_middleware(BearerAuthenticationMiddleware, token_service=token_service)

    # 4. Request logging (development only) - wraps the layers above so its
    #    access line can report their outcome
    if settings.APP_MODE == AppMode.DEV:
        app.add_middleware(RequestLoggingMiddleware)

    # 5. CORS middleware - must be last (first to process incoming requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    app.include_router(auth.router, prefix="/api")

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(status="ok", version=APP_VERSION)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "main:app",
        host=_settings.HOST,
        port=_settings.PORT,
        reload=(_settings.APP_MODE == AppMode.DEV),
    )
