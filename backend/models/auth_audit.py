"""Auth audit log model for security event tracking."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


class AuthAuditLog(Base):
    """
    Stores authentication-related events for security auditing.

    Tracks registrations, login attempts, logouts, token refreshes, password
    changes, password resets and account provisioning.
    """

    __tablename__ = "auth_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)  # Additional context as JSON
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    # Optional: failed logins for unknown emails have no user
    user = relationship("User", back_populates="auth_audit_logs")

    __table_args__ = (
        Index("ix_auth_audit_user_action", "user_id", "action"),
        Index("ix_auth_audit_created_success", "created_at", "success"),
    )

    # Action constants
    ACTION_REGISTER = "register"
    ACTION_LOGIN = "login"
    ACTION_LOGOUT = "logout"
    ACTION_TOKEN_REFRESH = "token_refresh"
    ACTION_PASSWORD_CHANGE = "password_change"
    ACTION_FAILED_LOGIN = "failed_login"
    ACTION_CREATE_STADIUM_MANAGER = "create_stadium_manager"
    ACTION_PASSWORD_RESET_REQUEST = "password_reset_request"
    ACTION_PASSWORD_RESET = "password_reset"

    def __repr__(self):
        return f"<AuthAuditLog(id={self.id}, user_id={self.user_id}, action='{self.action}', success={self.success})>"
