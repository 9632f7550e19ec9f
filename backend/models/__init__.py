from .auth_audit import AuthAuditLog
from .refresh_token import RefreshToken
from .role import Role, UserRole
from .user import User

__all__ = [
    "AuthAuditLog",
    "RefreshToken",
    "Role",
    "User",
    "UserRole",
]
