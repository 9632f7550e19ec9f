"""Reject authenticated requests whose access token was revoked at logout.

Runs after ``BearerAuthenticationMiddleware``. A store outage during the
check is logged and the request is allowed (fail open); signature and expiry
checks already happened and still fail closed.
"""

import logging
from typing import Callable

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from middleware.logging import get_request_id
from schemas.common import error_body
from services.blacklist import TokenBlacklist

logger = logging.getLogger(__name__)

TOKEN_REVOKED_MESSAGE = "This token has been revoked. Please login again."


class TokenBlacklistMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, blacklist: TokenBlacklist):
        super().__init__(app)
        self.blacklist = blacklist

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        principal = getattr(request.state, "principal", None)
        jti = principal.get("jti") if principal else None

        if jti:
            try:
                revoked = await self.blacklist.is_blacklisted(jti)
            except Exception:
                logger.error(
                    "[%s] Token blacklist check failed, allowing request (path=%s)",
                    get_request_id(request),
                    request.url.path,
                    exc_info=True,
                )
                revoked = False

            if revoked:
                request.state.token_revoked = True
                logger.warning(
                    "[%s] Rejected revoked access token (sub=%s, path=%s)",
                    get_request_id(request),
                    principal.get("sub"),
                    request.url.path,
                )
                return JSONResponse(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    content=error_body("TOKEN_REVOKED", TOKEN_REVOKED_MESSAGE),
                )

        return await call_next(request)
