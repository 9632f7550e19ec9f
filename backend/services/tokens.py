"""Access/refresh token issuance and validation (RS256)."""

import base64
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Sequence
from uuid import uuid4

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from jose import jwt
from jose.exceptions import JOSEError

from services.keys import SigningKeyPair

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
FULL_NAME_CLAIM = "fullName"
ROLE_CLAIM = "role"
REFRESH_TOKEN_BYTES = 64


class TokenSubject(Protocol):
    """Anything with the identity fields an access token carries."""

    id: Any
    email: str
    full_name: str


@dataclass
class TokenResult:
    """A freshly issued access + refresh token pair."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    jti: str


def generate_refresh_token() -> str:
    """Opaque refresh token: 64 CSPRNG bytes, base64 encoded."""
    return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


class TokenService:
    """
    Issues and validates access tokens with an explicitly supplied key pair.

    Validation is a pure cryptographic check: it never consults the token
    blacklist and never raises on bad input.
    """

    def __init__(
        self,
        key_pair: SigningKeyPair,
        *,
        issuer: str,
        audience: str,
        access_token_ttl_minutes: int = 30,
        clock_skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._key_pair = key_pair
        self.issuer = issuer
        self.audience = audience
        self.access_token_ttl_seconds = access_token_ttl_minutes * 60
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, key_pair: SigningKeyPair, settings) -> "TokenService":
        return cls(
            key_pair,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            access_token_ttl_minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES,
            clock_skew_seconds=settings.JWT_CLOCK_SKEW_SECONDS,
        )

    def generate_tokens(self, user: TokenSubject, roles: Sequence[str]) -> TokenResult:
        """
        Create a signed access token and an opaque refresh token for ``user``.

        Persisting the refresh token is the caller's responsibility.
        """
        if user is None:
            raise ValueError("user is required")

        now = int(self._clock())
        expires = now + self.access_token_ttl_seconds
        jti = str(uuid4())

        claims = {
            "sub": str(user.id),
            "email": user.email,
            "jti": jti,
            FULL_NAME_CLAIM: user.full_name,
            ROLE_CLAIM: list(roles),
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "nbf": now,
            "exp": expires,
        }
        access_token = jwt.encode(claims, self._key_pair.private_pem, algorithm=ALGORITHM)

        return TokenResult(
            access_token=access_token,
            refresh_token=generate_refresh_token(),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            jti=jti,
        )

    def get_public_key(self) -> RSAPublicNumbers:
        """Modulus and exponent of the verification key."""
        return self._key_pair.private_key.public_key().public_numbers()

    def get_jwks(self) -> dict:
        """Public key in JSON Web Key Set form for relying services."""
        return {"keys": [self._key_pair.public_jwk()]}

    def validate_token(self, token: str) -> Optional[dict]:
        """
        Verify signature, issuer, audience, nbf and exp (with clock skew).

        Returns:
            Claims dict if valid, None otherwise
        """
        if not isinstance(token, str) or not token:
            return None

        try:
            return jwt.decode(
                token,
                self._key_pair.public_pem,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "leeway": self.clock_skew_seconds,
                    "require_exp": True,
                    "require_nbf": True,
                    "require_iss": True,
                    "require_aud": True,
                    "require_sub": True,
                },
            )
        except (JOSEError, ValueError, TypeError) as e:
            logger.debug("Access token rejected: %s", type(e).__name__)
            return None
