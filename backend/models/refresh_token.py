"""Refresh token storage model for secure token rotation."""

import hashlib

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


def hash_refresh_token(token: str) -> str:
    """
    SHA-256 of a refresh token for storage and lookup.

    Refresh tokens are 64 random bytes, so an unsalted fast hash is enough.
    """
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshToken(Base):
    """
    Stores refresh tokens for secure token rotation.

    Each refresh token is stored as a hash and associated with device/session info.
    When a refresh token is used it is revoked, linked to its successor via
    ``replaced_by_token_hash``, and a new one is issued.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash = Column(String(64), unique=True, nullable=False, index=True)  # SHA-256 hash
    device_info = Column(String(200), nullable=True)  # User-Agent or device identifier
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6 address
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoke_reason = Column(String(100), nullable=True)
    replaced_by_token_hash = Column(String(64), nullable=True)

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("ix_refresh_tokens_user_expires", "user_id", "expires_at"),
    )

    REASON_ROTATION = "rotation"
    REASON_LOGOUT = "logout"
    REASON_PASSWORD_CHANGE = "password_change"
    REASON_PASSWORD_RESET = "password_reset"

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, revoked={self.is_revoked})>"
