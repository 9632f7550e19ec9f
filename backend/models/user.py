import uuid

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_user_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    # bcrypt hash; the raw password is never stored
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(200), nullable=False)
    phone_number = Column(String(32), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_email_verified = Column(Boolean, default=False, nullable=False)
    # sha256 of the pending password reset code, cleared once it is used
    password_reset_otp_hash = Column(String(128), nullable=True)
    password_reset_otp_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user_roles = relationship(
        "UserRole", back_populates="user", cascade="all, delete-orphan", lazy="selectin"
    )
    refresh_tokens = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan"
    )
    auth_audit_logs = relationship(
        "AuthAuditLog", back_populates="user"
    )

    @property
    def role_names(self) -> list[str]:
        return sorted(ur.role.name for ur in self.user_roles)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"
