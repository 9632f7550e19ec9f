"""FastAPI dependencies for services held on ``app.state`` and for the caller's identity.

Authentication itself happens once in ``BearerAuthenticationMiddleware``;
these dependencies only read its result.
"""

from typing import Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.user import User
from services.auth import AuthService
from services.blacklist import TokenBlacklist
from services.exceptions import ForbiddenException, UnauthorizedException
from services.tokens import ROLE_CLAIM, TokenService

INVALID_TOKEN_MESSAGE = "Authentication required."


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_blacklist(request: Request) -> TokenBlacklist:
    return request.app.state.blacklist


def get_auth_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    token_service: TokenService = Depends(get_token_service),
) -> AuthService:
    return AuthService.from_settings(
        db,
        token_service,
        request.app.state.settings,
        email_service=request.app.state.email_service,
    )


async def get_current_principal(request: Request) -> dict:
    """Verified access token claims, or 401 ``INVALID_TOKEN``."""
    principal: Optional[dict] = getattr(request.state, "principal", None)
    if not principal or not principal.get("sub"):
        raise UnauthorizedException("INVALID_TOKEN", INVALID_TOKEN_MESSAGE)
    return principal


async def get_current_user(
    principal: dict = Depends(get_current_principal),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """Load the authenticated user; a deleted or disabled account is treated as unauthenticated."""
    user = await auth_service.get_user_with_roles(principal["sub"])
    if user is None or not user.is_active:
        raise UnauthorizedException("INVALID_TOKEN", INVALID_TOKEN_MESSAGE)
    return user


def principal_roles(principal: dict) -> set[str]:
    roles = principal.get(ROLE_CLAIM) or []
    if isinstance(roles, str):
        roles = [roles]
    return set(roles)


def require_roles(*roles: str) -> Callable:
    """
    Dependency factory that admits callers holding at least one of ``roles``.

    Example:
        @router.post("/stadium-manager")
        async def create(principal: dict = Depends(require_roles("Admin"))):
            ...
    """
    allowed = set(roles)

    async def checker(principal: dict = Depends(get_current_principal)) -> dict:
        if not principal_roles(principal) & allowed:
            raise ForbiddenException("FORBIDDEN", "You do not have permission to perform this action.")
        return principal

    return checker
