"""RSA signing key bootstrap for access tokens.

The private key lives in a PEM file shared by every replica. On first start
the file does not exist yet; several replicas may race to create it, so the
write uses an exclusive create and the loser adopts the winner's key.
"""

import base64
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

# How long a losing replica waits for the winner to finish writing the PEM
_LOAD_RETRY_ATTEMPTS = 20
_LOAD_RETRY_DELAY_SECONDS = 0.1


class KeyBootstrapError(RuntimeError):
    """The signing key could neither be loaded nor created. Fatal at startup."""


def _b64url_uint(value: int) -> str:
    """Encode an unsigned integer as unpadded base64url (RFC 7518 section 6.3)."""
    raw = value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class SigningKeyPair:
    """Immutable RSA key pair used to sign and verify access tokens."""

    private_key: rsa.RSAPrivateKey
    private_pem: str
    public_pem: str

    @classmethod
    def from_private_key(cls, private_key: rsa.RSAPrivateKey) -> "SigningKeyPair":
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        return cls(private_key=private_key, private_pem=private_pem, public_pem=public_pem)

    @classmethod
    def generate(cls) -> "SigningKeyPair":
        return cls.from_private_key(
            rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
        )

    @classmethod
    def from_pem(cls, pem: bytes) -> "SigningKeyPair":
        private_key = serialization.load_pem_private_key(pem, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("Signing key file does not contain an RSA private key")
        return cls.from_private_key(private_key)

    @classmethod
    def load_or_create(cls, path: str | os.PathLike) -> "SigningKeyPair":
        """
        Load the key pair from ``path``, generating and persisting it if missing.

        Raises:
            KeyBootstrapError: if the directory or file cannot be created, or the
                existing file cannot be parsed.
        """
        key_path = Path(path)

        if key_path.exists():
            return cls._load(key_path)

        try:
            key_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise KeyBootstrapError(f"Cannot create key directory {key_path.parent}: {e}") from e

        key_pair = cls.generate()
        try:
            created = _write_exclusive(key_path, key_pair.private_pem.encode("ascii"))
        except OSError as e:
            raise KeyBootstrapError(f"Cannot write signing key to {key_path}: {e}") from e

        if not created:
            # Another process created the file first; its key is authoritative
            logger.info("Signing key created concurrently by another process, loading %s", key_path)
            return cls._load(key_path)

        logger.info("Generated new %d-bit RSA signing key at %s", KEY_SIZE, key_path)
        return key_pair

    @classmethod
    def _load(cls, key_path: Path) -> "SigningKeyPair":
        last_error: Exception | None = None
        for _ in range(_LOAD_RETRY_ATTEMPTS):
            try:
                pem = key_path.read_bytes()
                if pem:
                    key_pair = cls.from_pem(pem)
                    logger.info("Loaded RSA signing key from %s", key_path)
                    return key_pair
            except OSError as e:
                raise KeyBootstrapError(f"Cannot read signing key {key_path}: {e}") from e
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                # May be a partially written file from a concurrent bootstrap
                last_error = e
            time.sleep(_LOAD_RETRY_DELAY_SECONDS)

        raise KeyBootstrapError(f"Signing key file {key_path} is empty or invalid: {last_error}")

    def public_jwk(self) -> dict:
        """Public key as a JSON Web Key (RFC 7517)."""
        numbers = self.private_key.public_key().public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": "RS256",
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }


def _write_exclusive(path: Path, data: bytes) -> bool:
    """Create ``path`` with ``data`` only if it does not exist. Returns False if it did."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return False
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    return True
