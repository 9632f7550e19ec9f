"""Rate limiting middleware and utilities.

Implements fixed window rate limiting keyed by rule, client IP, the
authenticated user (when present) and the request path.

SECURITY NOTES:
- Counters live in the shared key-value store. Without REDIS_URL they are
  per-process and lost on restart.
- X-Forwarded-For header is only trusted when TRUSTED_PROXIES is configured.
  This prevents IP spoofing attacks.
- A store outage never takes the API down: the limiter fails open and logs.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from config import RateLimitRule
from middleware.logging import get_request_id
from schemas.common import error_body
from services.store import STORE_UNAVAILABLE_ERRORS, KeyValueStore

logger = logging.getLogger(__name__)

GLOBAL_RULE_NAME = "global"
RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."


def parse_trusted_proxies(value: Optional[str]) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """
    Parse trusted proxy configuration (comma-separated CIDRs).

    Returns list of IP networks that are trusted to set X-Forwarded-For headers.
    """
    if not value:
        # SECURITY: Do NOT trust X-Forwarded-* by default.
        return []

    networks = []
    for proxy in (p.strip() for p in value.split(",")):
        if not proxy:
            continue
        try:
            networks.append(ipaddress.ip_network(proxy, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy network '{proxy}': {e}")

    return networks


def _is_ip_trusted(ip: str, trusted_networks: Sequence) -> bool:
    """Check if an IP address is in any of the trusted networks."""
    try:
        ip_addr = ipaddress.ip_address(ip)
        return any(ip_addr in network for network in trusted_networks)
    except ValueError:
        return False


def get_client_ip(request: Request, trusted_networks: Optional[Sequence] = None) -> str:
    """
    Securely extract client IP address from request.

    SECURITY: Only trusts X-Forwarded-For header when the request comes from
    a configured trusted proxy. Walks X-Forwarded-For from right to left and
    returns the first hop that is NOT a trusted proxy, so a client cannot
    spoof its address by prepending fake entries.
    """
    if trusted_networks is None:
        trusted_networks = []

    direct_ip = request.client.host if request.client else None

    if not direct_ip:
        return "unknown"

    # Direct connection is not from a trusted proxy: don't trust any headers
    if not _is_ip_trusted(direct_ip, trusted_networks):
        return direct_ip

    forwarded_for = request.headers.get("X-Forwarded-For")

    if not forwarded_for:
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            try:
                ipaddress.ip_address(ip)
                return ip
            except ValueError:
                logger.warning(f"Invalid X-Real-IP header: {real_ip}")
                return direct_ip
        return direct_ip

    ips = [ip.strip() for ip in forwarded_for.split(",")]

    for ip in reversed(ips):
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            logger.warning(f"Invalid IP in X-Forwarded-For: {ip}")
            continue

        if not _is_ip_trusted(ip, trusted_networks):
            return ip

    # All IPs in the chain are trusted proxies, use the leftmost (original)
    if ips:
        try:
            ipaddress.ip_address(ips[0])
            return ips[0]
        except ValueError:
            pass

    return direct_ip


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one counted request."""

    rule: RateLimitRule
    count: int
    reset_seconds: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.rule.permit_limit

    @property
    def remaining(self) -> int:
        return max(0, self.rule.permit_limit - self.count)

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.rule.permit_limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


class RateLimiter:
    """
    Fixed window rate limiter over a shared key-value store.

    Rules are matched against the lower-cased request path; the first exact
    (case-insensitive) match wins, otherwise the global rule applies.
    """

    def __init__(
        self,
        store: KeyValueStore,
        rules: Sequence[RateLimitRule] = (),
        global_rule: Optional[RateLimitRule] = None,
        *,
        enabled: bool = True,
        trusted_networks: Optional[Sequence] = None,
    ):
        self.store = store
        self.rules = tuple(rules)
        self.global_rule = global_rule or RateLimitRule(
            name=GLOBAL_RULE_NAME, path_pattern="*", permit_limit=100, window_seconds=60
        )
        self.enabled = enabled
        self.trusted_networks = list(trusted_networks or [])

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings) -> "RateLimiter":
        return cls(
            store,
            rules=settings.RATE_LIMIT_RULES,
            global_rule=RateLimitRule(
                name=GLOBAL_RULE_NAME,
                path_pattern="*",
                permit_limit=settings.RATE_LIMIT_GLOBAL_PERMIT_LIMIT,
                window_seconds=settings.RATE_LIMIT_GLOBAL_WINDOW_SECONDS,
            ),
            enabled=settings.RATE_LIMIT_ENABLED,
            trusted_networks=parse_trusted_proxies(settings.TRUSTED_PROXIES),
        )

    def resolve_rule(self, path: str) -> RateLimitRule:
        path = path.lower()
        for rule in self.rules:
            if rule.path_pattern.lower() == path:
                return rule
        return self.global_rule

    @staticmethod
    def partition_key(rule: RateLimitRule, client_ip: str, user_id: Optional[str], path: str) -> str:
        if user_id:
            return f"ratelimit:{rule.name}:{client_ip}:{user_id}:{path}"
        return f"ratelimit:{rule.name}:{client_ip}:{path}"

    async def hit(self, path: str, client_ip: str, user_id: Optional[str] = None) -> RateLimitDecision:
        """
        Count one request against the matching rule.

        Raises whatever the store raises; the middleware decides how to degrade.
        """
        path = path.lower()
        rule = self.resolve_rule(path)
        key = self.partition_key(rule, client_ip, user_id, path)
        count, ttl = await self.store.increment_window(key, rule.window_seconds)
        return RateLimitDecision(rule=rule, count=count, reset_seconds=max(0, ttl))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware for per-rule rate limiting.

    Must run inside the authentication middleware so authenticated callers
    are partitioned by user id as well as IP.
    """

    def __init__(self, app, rate_limiter: RateLimiter):
        super().__init__(app)
        self.rate_limiter = rate_limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.rate_limiter.enabled:
            return await call_next(request)

        path = request.url.path
        client_ip = get_client_ip(request, self.rate_limiter.trusted_networks)
        request.state.client_ip = client_ip
        principal = getattr(request.state, "principal", None)
        user_id = principal.get("sub") if principal else None

        try:
            decision = await self.rate_limiter.hit(path, client_ip, user_id)
        except STORE_UNAVAILABLE_ERRORS:
            logger.error(
                "[%s] Rate limit store unavailable, allowing request (path=%s, ip=%s)",
                get_request_id(request),
                path,
                client_ip,
                exc_info=True,
            )
            return await call_next(request)
        except Exception:
            logger.exception(
                "[%s] Unexpected rate limiter error, allowing request (path=%s, ip=%s)",
                get_request_id(request),
                path,
                client_ip,
            )
            return await call_next(request)

        request.state.rate_limit = decision
        if not decision.allowed:
            retry_after = max(1, decision.reset_seconds)
            logger.warning(
                f"[{get_request_id(request)}] Rate limit exceeded for rule {decision.rule.name} "
                f"(path={path}, ip={client_ip}, user={user_id or '-'})"
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content=error_body("RATE_LIMITED", RATE_LIMITED_MESSAGE),
                headers={**decision.headers(), "Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response
