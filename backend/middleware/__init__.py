"""Middleware package for authentication, revocation, rate limiting and access logging."""

from .authentication import BearerAuthenticationMiddleware
from .logging import RequestLoggingMiddleware, get_request_id
from .rate_limit import RateLimiter, RateLimitMiddleware, get_client_ip
from .token_blacklist import TokenBlacklistMiddleware

__all__ = [
    "BearerAuthenticationMiddleware",
    "RateLimitMiddleware",
    "RateLimiter",
    "RequestLoggingMiddleware",
    "TokenBlacklistMiddleware",
    "get_client_ip",
    "get_request_id",
]
