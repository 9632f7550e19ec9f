"""Authentication service: accounts, credentials and refresh token rotation."""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import bcrypt
from fastapi import Request
from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from middleware.rate_limit import get_client_ip
from models.auth_audit import AuthAuditLog
from models.refresh_token import RefreshToken, hash_refresh_token
from models.role import Role, UserRole
from models.user import User
from schemas.user import (
    AuthResponse,
    ChangePasswordRequest,
    CreateStadiumManagerRequest,
    CreateStadiumManagerResponse,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from services.email import EmailService, LoggingEmailService
from services.exceptions import (
    BadRequestException,
    ConflictException,
    NotFoundException,
    UnauthorizedException,
)
from services.tokens import TokenResult, TokenService

logger = logging.getLogger(__name__)

# bcrypt ignores everything past 72 bytes (bcrypt>=5 raises instead)
BCRYPT_MAX_BYTES = 72
SELF_REGISTER_ROLES = frozenset({Role.USER, Role.ORGANIZER})
TEMPORARY_PASSWORD_LENGTH = 12
PASSWORD_RESET_OTP_DIGITS = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("ascii"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=None)
def dummy_password_hash(rounds: int = 12) -> str:
    """
    Hash of a random password nobody knows.

    Login checks it when the email is unknown so that both outcomes cost one
    bcrypt verification and response time does not reveal registered emails.
    """
    return hash_password(secrets.token_urlsafe(16), rounds)


def generate_otp(digits: int = PASSWORD_RESET_OTP_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def hash_otp(user_id: str, otp: str) -> str:
    # Bound to the user so one leaked row cannot be replayed for another account
    return hashlib.sha256(f"{user_id}:{otp}".encode("utf-8")).hexdigest()


def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    """Random password with at least one lower, upper, digit and symbol."""
    symbols = "!@#$%^&*"
    alphabet = string.ascii_letters + string.digits + symbols
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(symbols),
    ]
    chars = required + [secrets.choice(alphabet) for _ in range(length - len(required))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class AuditService:
    """Service for logging authentication events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuthAuditLog:
        """Log an authentication event."""
        log_entry = AuthAuditLog(
            user_id=user_id,
            action=action,
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:500] if user_agent else None,
            success=success,
            error_message=error_message,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.db.add(log_entry)
        await self.db.flush()
        return log_entry


class AuthService:
    """
    Account and session operations.

    Every public method is one unit of work and commits on success. Expected
    failures raise ``AppException`` subclasses that the API renders into the
    standard envelope.
    """

    def __init__(
        self,
        db: AsyncSession,
        token_service: TokenService,
        *,
        refresh_token_expire_days: int = 7,
        bcrypt_rounds: int = 12,
        password_reset_otp_expire_minutes: int = 10,
        email_service: Optional[EmailService] = None,
    ):
        self.db = db
        self.token_service = token_service
        self.refresh_token_expire_days = refresh_token_expire_days
        self.bcrypt_rounds = bcrypt_rounds
        self.password_reset_otp_expire_minutes = password_reset_otp_expire_minutes
        self.email_service = email_service or LoggingEmailService()
        self.audit = AuditService(db)

    @classmethod
    def from_settings(
        cls,
        db: AsyncSession,
        token_service: TokenService,
        settings,
        email_service: Optional[EmailService] = None,
    ) -> "AuthService":
        return cls(
            db,
            token_service,
            refresh_token_expire_days=settings.REFRESH_TOKEN_EXPIRE_DAYS,
            bcrypt_rounds=settings.BCRYPT_ROUNDS,
            password_reset_otp_expire_minutes=settings.PASSWORD_RESET_OTP_EXPIRE_MINUTES,
            email_service=email_service,
        )

    # ---- helpers -------------------------------------------------------

    async def _hash(self, password: str) -> str:
        # bcrypt is deliberately slow; keep it off the event loop
        return await asyncio.to_thread(hash_password, password, self.bcrypt_rounds)

    async def _verify(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(verify_password, password, password_hash)

    async def _dummy_hash(self) -> str:
        return await asyncio.to_thread(dummy_password_hash, self.bcrypt_rounds)

    async def _get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def _get_user(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _get_role(self, name: str) -> Optional[Role]:
        result = await self.db.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def _create_user(
        self,
        *,
        email: str,
        password: str,
        full_name: str,
        role: Role,
        phone_number: Optional[str] = None,
    ) -> User:
        user = User(
            email=email,
            password_hash=await self._hash(password),
            full_name=full_name,
            phone_number=phone_number,
            is_active=True,
        )
        user.user_roles = [UserRole(role=role)]
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same email
            await self.db.rollback()
            raise ConflictException("EMAIL_EXISTS", "An account with this email already exists.")
        return user

    def _store_refresh_token(
        self,
        user_id: str,
        refresh_token: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> RefreshToken:
        stored = RefreshToken(
            user_id=user_id,
            token_hash=hash_refresh_token(refresh_token),
            ip_address=ip_address[:45] if ip_address else None,
            device_info=user_agent[:200] if user_agent else None,
            expires_at=_utcnow() + timedelta(days=self.refresh_token_expire_days),
        )
        self.db.add(stored)
        return stored

    def _issue(
        self,
        user: User,
        roles: list[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> TokenResult:
        result = self.token_service.generate_tokens(user, roles)
        self._store_refresh_token(user.id, result.refresh_token, ip_address, user_agent)
        return result

    @staticmethod
    def _auth_response(user: User, roles: list[str], result: TokenResult) -> AuthResponse:
        return AuthResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            user_id=user.id,
            roles=roles,
        )

    # ---- operations ----------------------------------------------------

    async def register(
        self,
        request: RegisterRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResponse:
        """Create a User or Organizer account and sign it in."""
        role_name = request.role or Role.USER
        if role_name not in SELF_REGISTER_ROLES:
            raise BadRequestException("INVALID_ROLE", "The specified role cannot be self-assigned.")

        if await self._get_user_by_email(request.email) is not None:
            raise ConflictException("EMAIL_EXISTS", "An account with this email already exists.")

        role = await self._get_role(role_name)
        if role is None:
            raise BadRequestException("INVALID_ROLE", "The specified role does not exist.")

        user = await self._create_user(
            email=request.email,
            password=request.password,
            full_name=request.full_name,
            role=role,
        )

        roles = [role_name]
        result = self._issue(user, roles, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_REGISTER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"role": role_name},
        )
        await self.db.commit()

        logger.info("Registered user %s with role %s", user.id, role_name)
        return self._auth_response(user, roles, result)

    async def login(
        self,
        request: LoginRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResponse:
        user = await self._get_user_by_email(request.email)
        password_hash = user.password_hash if user is not None else await self._dummy_hash()
        password_ok = await self._verify(request.password, password_hash)

        if user is None or not password_ok:
            await self.audit.log(
                AuthAuditLog.ACTION_FAILED_LOGIN,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Invalid email or password",
            )
            await self.db.commit()
            logger.warning("Failed login attempt (ip=%s)", ip_address)
            raise UnauthorizedException("INVALID_CREDENTIALS", "Invalid email or password.")

        if not user.is_active:
            raise UnauthorizedException("ACCOUNT_DISABLED", "Your account has been disabled.")

        roles = user.role_names
        result = self._issue(user, roles, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_LOGIN,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()
        return self._auth_response(user, roles, result)

    async def refresh(
        self,
        refresh_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResponse:
        """
        Exchange a refresh token for a new pair (rotation).

        The presented token is revoked and linked to its successor; it can
        never be used again.
        """
        if not refresh_token:
            raise UnauthorizedException("INVALID_REFRESH_TOKEN", "Refresh token is invalid.")

        token_hash = hash_refresh_token(refresh_token)
        result = await self.db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        )
        stored = result.scalar_one_or_none()

        if stored is None:
            raise UnauthorizedException("INVALID_REFRESH_TOKEN", "Refresh token is invalid.")
        if stored.revoked_at is not None:
            logger.warning(
                "Revoked refresh token presented for user %s (reason=%s)",
                stored.user_id,
                stored.revoke_reason,
            )
            raise UnauthorizedException("TOKEN_REVOKED", "Refresh token has been revoked.")
        if _as_utc(stored.expires_at) < _utcnow():
            raise UnauthorizedException("TOKEN_EXPIRED", "Refresh token has expired.")

        user = await self._get_user(stored.user_id)
        if user is None:
            raise UnauthorizedException("INVALID_REFRESH_TOKEN", "Refresh token is invalid.")
        if not user.is_active:
            raise UnauthorizedException("ACCOUNT_DISABLED", "Your account has been disabled.")

        roles = user.role_names
        tokens = self.token_service.generate_tokens(user, roles)

        # Conditional update: of two concurrent refreshes only one claims the token
        claimed = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id == stored.id,
                    RefreshToken.revoked_at.is_(None),
                )
            )
            .values(
                revoked_at=_utcnow(),
                revoke_reason=RefreshToken.REASON_ROTATION,
                replaced_by_token_hash=hash_refresh_token(tokens.refresh_token),
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            raise UnauthorizedException("TOKEN_REVOKED", "Refresh token has been revoked.")

        self._store_refresh_token(user.id, tokens.refresh_token, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_TOKEN_REFRESH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()
        return self._auth_response(user, roles, tokens)

    async def logout(
        self,
        refresh_token: Optional[str],
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Revoke the given refresh token if it exists. Idempotent.

        Returns:
            True if a live token was revoked
        """
        revoked = False
        if refresh_token:
            conditions = [
                RefreshToken.token_hash == hash_refresh_token(refresh_token),
                RefreshToken.revoked_at.is_(None),
            ]
            if user_id is not None:
                # Never let one user revoke another user's session
                conditions.append(RefreshToken.user_id == user_id)
            result = await self.db.execute(
                update(RefreshToken)
                .where(and_(*conditions))
                .values(revoked_at=_utcnow(), revoke_reason=RefreshToken.REASON_LOGOUT)
                .execution_options(synchronize_session=False)
            )
            revoked = result.rowcount > 0

        await self.audit.log(
            AuthAuditLog.ACTION_LOGOUT,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"refresh_token_revoked": revoked},
        )
        await self.db.commit()
        return revoked

    async def change_password(
        self,
        user_id: str,
        request: ChangePasswordRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """
        Replace the password and sign out every session.

        Returns:
            Number of refresh tokens revoked
        """
        user = await self._get_user(user_id)
        if user is None:
            raise NotFoundException("USER_NOT_FOUND", "User not found.")

        if not await self._verify(request.current_password, user.password_hash):
            await self.audit.log(
                AuthAuditLog.ACTION_PASSWORD_CHANGE,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Current password is incorrect",
            )
            await self.db.commit()
            raise UnauthorizedException("INVALID_CREDENTIALS", "Current password is incorrect.")

        user.password_hash = await self._hash(request.new_password)
        revoked = await self.revoke_all_user_tokens(user.id, reason=RefreshToken.REASON_PASSWORD_CHANGE)
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_CHANGE,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        await self.db.commit()

        logger.info("Password changed for user %s, %d sessions revoked", user.id, revoked)
        return revoked

    async def forgot_password(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Email a one-time reset code to an active account.

        Unknown and disabled accounts get the same silent success, so callers
        cannot learn which emails are registered. A new request replaces any
        code that is still pending.
        """
        user = await self._get_user_by_email(email)
        if user is None or not user.is_active:
            await self.audit.log(
                AuthAuditLog.ACTION_PASSWORD_RESET_REQUEST,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Unknown or disabled account",
            )
            await self.db.commit()
            logger.info("Password reset requested for unknown or disabled account (ip=%s)", ip_address)
            return

        otp = generate_otp()
        user.password_reset_otp_hash = hash_otp(user.id, otp)
        user.password_reset_otp_expires_at = _utcnow() + timedelta(
            minutes=self.password_reset_otp_expire_minutes
        )
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_RESET_REQUEST,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()

        await self.email_service.send_password_reset_otp(
            user.email, user.full_name, otp, self.password_reset_otp_expire_minutes
        )

    async def reset_password(
        self,
        request: ResetPasswordRequest,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """
        Set a new password using the emailed code and sign out every session.

        The code is single use: it is cleared in the same conditional UPDATE
        that stores the new hash, so of two concurrent resets only one wins.

        Returns:
            Number of refresh tokens revoked
        """
        user = await self._get_user_by_email(request.email)
        stored_hash = user.password_reset_otp_hash if user is not None else None
        if stored_hash is None or not hmac.compare_digest(stored_hash, hash_otp(user.id, request.otp)):
            await self._reset_failed(user, ip_address, user_agent, "Invalid reset code")
            raise BadRequestException("INVALID_OTP", "Invalid or expired reset code.")

        expires_at = user.password_reset_otp_expires_at
        if expires_at is None or _as_utc(expires_at) < _utcnow():
            user.password_reset_otp_hash = None
            user.password_reset_otp_expires_at = None
            await self._reset_failed(user, ip_address, user_agent, "Expired reset code")
            raise BadRequestException("OTP_EXPIRED", "Reset code has expired. Please request a new one.")

        if not user.is_active:
            raise UnauthorizedException("ACCOUNT_DISABLED", "Your account has been disabled.")

        new_hash = await self._hash(request.new_password)
        claimed = await self.db.execute(
            update(User)
            .where(
                and_(
                    User.id == user.id,
                    User.password_reset_otp_hash == stored_hash,
                )
            )
            .values(
                password_hash=new_hash,
                password_reset_otp_hash=None,
                password_reset_otp_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            raise BadRequestException("INVALID_OTP", "Invalid or expired reset code.")

        revoked = await self.revoke_all_user_tokens(user.id, reason=RefreshToken.REASON_PASSWORD_RESET)
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_RESET,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        await self.db.commit()

        logger.info("Password reset for user %s, %d sessions revoked", user.id, revoked)
        return revoked

    async def _reset_failed(
        self,
        user: Optional[User],
        ip_address: Optional[str],
        user_agent: Optional[str],
        reason: str,
    ) -> None:
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_RESET,
            user_id=user.id if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message=reason,
        )
        await self.db.commit()
        logger.warning("Failed password reset attempt (ip=%s): %s", ip_address, reason)

    async def create_stadium_manager(
        self,
        request: CreateStadiumManagerRequest,
        created_by: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CreateStadiumManagerResponse:
        """Provision a StadiumOwner account with a temporary password sent by email."""
        if await self._get_user_by_email(request.email) is not None:
            raise ConflictException("EMAIL_EXISTS", "An account with this email already exists.")

        role = await self._get_role(Role.STADIUM_OWNER)
        if role is None:
            raise BadRequestException("INVALID_ROLE", "The specified role does not exist.")

        temporary_password = generate_temporary_password()
        user = await self._create_user(
            email=request.email,
            password=temporary_password,
            full_name=request.full_name,
            phone_number=request.phone_number,
            role=role,
        )
        await self.audit.log(
            AuthAuditLog.ACTION_CREATE_STADIUM_MANAGER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"created_by": created_by},
        )
        await self.db.commit()

        await self.email_service.send_stadium_manager_credentials(
            user.email, user.full_name, temporary_password
        )

        return CreateStadiumManagerResponse(
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=Role.STADIUM_OWNER,
            message="Temporary password sent to the manager's email.",
        )

    async def revoke_all_user_tokens(self, user_id: str, reason: str = "logout_all") -> int:
        """
        Revoke all active refresh tokens for a user.

        Returns:
            Number of tokens revoked
        """
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                )
            )
            .values(revoked_at=_utcnow(), revoke_reason=reason)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount

    async def get_user_with_roles(self, user_id: str) -> Optional[User]:
        return await self._get_user(user_id)

    async def cleanup_expired_tokens(self) -> int:
        """
        Delete expired refresh tokens.

        Returns:
            Number of rows deleted
        """
        result = await self.db.execute(
            delete(RefreshToken).where(RefreshToken.expires_at < _utcnow())
        )
        await self.db.commit()
        return result.rowcount


def get_client_info(request: Request) -> tuple[str, str]:
    """Extract client IP (trusted-proxy aware) and User-Agent from request."""
    trusted = getattr(request.app.state, "trusted_proxies", None)
    ip_address = get_client_ip(request, trusted)
    user_agent = request.headers.get("User-Agent", "unknown")
    return ip_address, user_agent
