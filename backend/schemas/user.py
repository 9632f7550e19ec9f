from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .validators import normalize_email, normalize_phone, normalize_required_text


class RegisterRequest(BaseModel):
    """Self-service registration. Only "User" and "Organizer" may be requested."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=100)
    full_name: str = Field(..., max_length=200, alias="fullName")
    role: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return normalize_email(value)

    @field_validator("full_name", mode="before")
    @classmethod
    def validate_full_name(cls, value):
        return normalize_required_text(value, field_name="Full name", strip_html=True)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=100)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return normalize_email(value)


class RefreshRequest(BaseModel):
    """Refresh token exchange (also the logout body)."""

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=512)

    model_config = {"populate_by_name": True}


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100, alias="currentPassword")
    new_password: str = Field(..., min_length=8, max_length=100, alias="newPassword")

    model_config = {"populate_by_name": True}


class ForgotPasswordRequest(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return normalize_email(value)


class ResetPasswordRequest(BaseModel):
    """Completes a reset with the one-time code sent by ``/forgot-password``."""

    email: EmailStr
    otp: str = Field(..., pattern=r"^[0-9]{6}$")
    new_password: str = Field(..., min_length=8, max_length=100, alias="newPassword")

    model_config = {"populate_by_name": True}

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return normalize_email(value)

    @field_validator("otp", mode="before")
    @classmethod
    def validate_otp(cls, value):
        return value.strip() if isinstance(value, str) else value


class CreateStadiumManagerRequest(BaseModel):
    """Admin-only provisioning of a StadiumOwner account."""

    email: EmailStr
    full_name: str = Field(..., max_length=200, alias="fullName")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=32)

    model_config = {"populate_by_name": True}

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value):
        return normalize_email(value)

    @field_validator("full_name", mode="before")
    @classmethod
    def validate_full_name(cls, value):
        return normalize_required_text(value, field_name="Full name", strip_html=True)

    @field_validator("phone_number", mode="before")
    @classmethod
    def validate_phone(cls, value):
        return normalize_phone(value)


class CreateStadiumManagerResponse(BaseModel):
    user_id: str = Field(..., alias="userId")
    email: str
    full_name: str = Field(..., alias="fullName")
    role: str = "StadiumOwner"
    message: str

    model_config = {"populate_by_name": True}


class AuthResponse(BaseModel):
    """Token pair handed to the client after register, login and refresh."""

    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    token_type: str = Field("Bearer", alias="tokenType")
    expires_at: datetime = Field(..., alias="expiresAt")
    user_id: str = Field(..., alias="userId")
    roles: List[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class UserResponse(BaseModel):
    """User info response"""

    id: str
    email: str
    full_name: str = Field(..., alias="fullName")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    roles: List[str] = Field(default_factory=list)
    is_active: bool = Field(..., alias="isActive")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    model_config = {"populate_by_name": True}
