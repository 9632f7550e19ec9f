"""Authentication routes: accounts, password reset, refresh token rotation, logout and JWKS discovery."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import (
    get_auth_service,
    get_blacklist,
    get_current_principal,
    get_current_user,
    get_token_service,
    require_roles,
)
from models.role import Role
from models.user import User
from schemas.common import ApiResponse
from schemas.user import (
    AuthResponse,
    ChangePasswordRequest,
    CreateStadiumManagerRequest,
    CreateStadiumManagerResponse,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from services.auth import AuthService, get_client_info
from services.blacklist import TokenBlacklist
from services.tokens import TokenService

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# Background task for periodic refresh token cleanup
_cleanup_task: Optional[asyncio.Task] = None
CLEANUP_INTERVAL_SECONDS = 3600  # Run cleanup every hour


async def _periodic_token_cleanup(app):
    """Background task to periodically delete expired refresh tokens."""
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            from db.database import AsyncSessionLocal

            async with AsyncSessionLocal() as db:
                service = AuthService(db, app.state.token_service)
                deleted = await service.cleanup_expired_tokens()
                if deleted > 0:
                    logger.info(f"Token cleanup completed: {deleted} expired refresh tokens removed")
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in token cleanup task: {e}")


def start_cleanup_task(app):
    """Start the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task is None or _cleanup_task.done():
        _cleanup_task = asyncio.create_task(_periodic_token_cleanup(app))
        logger.debug("Started periodic token cleanup task")


def stop_cleanup_task():
    """Stop the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Stopped periodic token cleanup task")
    _cleanup_task = None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        phone_number=user.phone_number,
        roles=user.role_names,
        is_active=user.is_active,
        created_at=user.created_at,
    )


@router.get("/.well-known/jwks")
async def get_jwks(token_service: TokenService = Depends(get_token_service)) -> dict:
    """
    RSA public key in JWKS format.

    Relying services validate access tokens locally with this key instead of
    calling back into the auth service.
    """
    return token_service.get_jwks()


@router.post("/register", response_model=ApiResponse[AuthResponse])
async def register(
    body: RegisterRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    ip_address, user_agent = get_client_info(request)
    result = await auth_service.register(body, ip_address, user_agent)
    return ApiResponse.ok(result, "Registration successful")


@router.post("/login", response_model=ApiResponse[AuthResponse])
async def login(
    body: LoginRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    ip_address, user_agent = get_client_info(request)
    result = await auth_service.login(body, ip_address, user_agent)
    return ApiResponse.ok(result, "Login successful")


@router.post("/refresh", response_model=ApiResponse[AuthResponse])
async def refresh_tokens(
    body: RefreshRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    """Rotate a refresh token: the presented token is revoked and a new pair issued."""
    ip_address, user_agent = get_client_info(request)
    result = await auth_service.refresh(body.refresh_token, ip_address, user_agent)
    return ApiResponse.ok(result)


@router.post("/logout", response_model=ApiResponse[dict])
async def logout(
    request: Request,
    body: Optional[RefreshRequest] = None,
    principal: dict = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
    blacklist: TokenBlacklist = Depends(get_blacklist),
):
    """
    Log out the current session.

    The caller's access token is blacklisted until it expires, so it stops
    working immediately; the supplied refresh token is revoked.
    """
    ip_address, user_agent = get_client_info(request)

    try:
        jti = principal.get("jti")
        exp = principal.get("exp")
        if jti and exp:
            expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
            await blacklist.blacklist(jti, expires_at)
    except Exception:
        logger.exception("Failed to blacklist access token during logout")

    await auth_service.logout(
        body.refresh_token if body else None,
        user_id=principal["sub"],
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return ApiResponse.ok({}, "Logged out successfully")


@router.post("/change-password", response_model=ApiResponse[dict])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Change the password and sign out every session of the user."""
    ip_address, user_agent = get_client_info(request)
    revoked = await auth_service.change_password(current_user.id, body, ip_address, user_agent)
    return ApiResponse.ok(
        {"sessionsRevoked": revoked},
        "Password changed successfully. Please login again.",
    )


@router.post("/forgot-password", response_model=ApiResponse[dict])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    """Email a one-time reset code. The response is the same whether or not the email is registered."""
    ip_address, user_agent = get_client_info(request)
    await auth_service.forgot_password(body.email, ip_address, user_agent)
    return ApiResponse.ok({}, "If an account exists for this email, a reset code has been sent.")


@router.post("/reset-password", response_model=ApiResponse[dict])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    ip_address, user_agent = get_client_info(request)
    revoked = await auth_service.reset_password(body, ip_address, user_agent)
    return ApiResponse.ok(
        {"sessionsRevoked": revoked},
        "Password has been reset. Please login again.",
    )


@router.get("/me", response_model=ApiResponse[UserResponse])
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current authenticated user info."""
    return ApiResponse.ok(_user_response(current_user))


@router.post("/stadium-manager", response_model=ApiResponse[CreateStadiumManagerResponse])
async def create_stadium_manager(
    body: CreateStadiumManagerRequest,
    request: Request,
    principal: dict = Depends(require_roles(Role.ADMIN)),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Admin-only: create a Stadium Manager account with a temporary password."""
    ip_address, user_agent = get_client_info(request)
    result = await auth_service.create_stadium_manager(
        body, created_by=principal["sub"], ip_address=ip_address, user_agent=user_agent
    )
    return ApiResponse.ok(result, "Stadium Manager created successfully")
