from .common import ApiError, ApiResponse, HealthResponse, error_body
from .user import (
    AuthResponse,
    ChangePasswordRequest,
    CreateStadiumManagerRequest,
    CreateStadiumManagerResponse,
    ForgotPasswordRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)

__all__ = [
    "ApiError",
    "ApiResponse",
    "AuthResponse",
    "ChangePasswordRequest",
    "CreateStadiumManagerRequest",
    "CreateStadiumManagerResponse",
    "ForgotPasswordRequest",
    "HealthResponse",
    "LoginRequest",
    "RefreshRequest",
    "RegisterRequest",
    "ResetPasswordRequest",
    "UserResponse",
    "error_body",
]
