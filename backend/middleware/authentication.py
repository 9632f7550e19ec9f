"""Bearer token authentication middleware.

Validates the ``Authorization: Bearer`` header once per request and exposes
the verified claims as ``request.state.principal``. It never rejects a
request itself: protected routes decide via ``get_current_principal``, and
anonymous endpoints (login, register, JWKS) keep working with a stale header.
"""

import logging
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from services.tokens import TokenService

logger = logging.getLogger(__name__)


def extract_bearer_token(request: Request) -> Optional[str]:
    """Return the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class BearerAuthenticationMiddleware(BaseHTTPMiddleware):
    """Attach verified access token claims to the request state."""

    def __init__(self, app, token_service: TokenService):
        super().__init__(app)
        self.token_service = token_service

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.principal = None

        token = extract_bearer_token(request)
        if token:
            claims = self.token_service.validate_token(token)
            if claims is None:
                logger.debug("Ignoring invalid bearer token on %s", request.url.path)
            request.state.principal = claims

        return await call_next(request)
