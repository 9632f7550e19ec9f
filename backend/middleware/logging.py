"""Development access log.

Each request gets a short id, kept on ``request.state.request_id`` and echoed
in ``X-Request-ID``. The rate limiter and the revocation check prefix their
warnings with the same id, and the access line itself records what they
decided, so one grep shows the whole story of a rejected request.

Only enabled in development mode: it logs caller ids and query strings.
"""

import logging
import time
import uuid
from typing import Callable, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.requests")

REQUEST_ID_HEADER = "X-Request-ID"

# Health checks and docs only get the response header
QUIET_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})

# Query parameters that must never reach the logs
SENSITIVE_PARAMS = frozenset(
    {"token", "access_token", "refresh_token", "refreshtoken", "password", "otp", "key"}
)


def get_request_id(request: Request) -> str:
    """Id of the current request, or "-" when the access log is off."""
    return getattr(request.state, "request_id", None) or "-"


def redact_params(params: Mapping[str, str]) -> dict:
    return {k: ("***" if k.lower() in SENSITIVE_PARAMS else v) for k, v in params.items()}


def describe_outcome(request: Request) -> str:
    """
    Summarize what the inner middleware recorded on the request state.

    ``principal`` comes from bearer authentication, ``rate_limit`` from the
    limiter and ``token_revoked`` from the blacklist check.
    """
    principal = getattr(request.state, "principal", None)
    parts = [f"sub={principal.get('sub') if principal else '-'}"]

    decision = getattr(request.state, "rate_limit", None)
    if decision is not None:
        verdict = "allowed" if decision.allowed else "limited"
        parts.append(f"rule={decision.rule.name} {verdict} remaining={decision.remaining}")

    if getattr(request.state, "token_revoked", False):
        parts.append("token=revoked")
    return " ".join(parts)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One line per request once the response is known:

        [1f2e3d4c] POST /api/auth/login client=203.0.113.10 sub=- rule=auth-strict allowed remaining=4 - 200 (0.051s)

    Added after the auth, rate-limit and blacklist middleware (so it wraps
    them) and before CORS; the line is written once they have filled in the
    request state.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id

        if request.url.path in QUIET_PATHS:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        request_desc = f"{request.method} {request.url.path}"
        if request.query_params:
            request_desc += f" params={redact_params(request.query_params)}"

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "[%s] %s %s - ERROR (%.3fs)",
                request_id,
                request_desc,
                self._caller(request),
                time.perf_counter() - started,
            )
            raise

        status_code = response.status_code
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        elif request.method == "GET":
            level = logging.DEBUG
        else:
            level = logging.INFO

        logger.log(
            level,
            "[%s] %s %s - %d (%.3fs)",
            request_id,
            request_desc,
            self._caller(request),
            status_code,
            time.perf_counter() - started,
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @staticmethod
    def _caller(request: Request) -> str:
        # The limiter resolves the proxy-aware address; fall back to the socket peer
        client_ip = getattr(request.state, "client_ip", None)
        if client_ip is None:
            client_ip = request.client.host if request.client else "unknown"
        return f"client={client_ip} {describe_outcome(request)}"
