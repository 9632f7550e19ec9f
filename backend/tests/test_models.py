"""
Unit tests for database models
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from db.database import DEFAULT_ROLES, seed_roles
from models.refresh_token import RefreshToken, hash_refresh_token
from models.role import Role, UserRole
from models.user import User


class TestRoleSeeding:
    @pytest.mark.asyncio
    async def test_default_roles_present(self, db_session):
        result = await db_session.execute(select(Role.name))
        assert sorted(result.scalars().all()) == sorted(DEFAULT_ROLES)

    @pytest.mark.asyncio
    async def test_seeding_is_idempotent(self, db_session):
        await seed_roles(db_session)
        await seed_roles(db_session)

        count = await db_session.scalar(select(func.count()).select_from(Role))
        assert count == len(DEFAULT_ROLES)


class TestUserModel:
    @pytest.mark.asyncio
    async def test_user_gets_uuid_and_roles(self, db_session):
        role = (await db_session.execute(select(Role).where(Role.name == Role.ORGANIZER))).scalar_one()
        user = User(email="org@arenaops.io", password_hash="x", full_name="Orla")
        user.user_roles = [UserRole(role=role)]
        db_session.add(user)
        await db_session.commit()

        assert len(user.id) == 36
        assert user.is_active is True
        assert user.is_email_verified is False
        assert user.role_names == [Role.ORGANIZER]

    @pytest.mark.asyncio
    async def test_email_unique(self, db_session):
        db_session.add(User(email="dup@arenaops.io", password_hash="x", full_name="A"))
        await db_session.commit()

        db_session.add(User(email="dup@arenaops.io", password_hash="y", full_name="B"))
        with pytest.raises(IntegrityError):
            await db_session.commit()


class TestRefreshTokenModel:
    def test_hash_is_sha256_hex(self):
        digest = hash_refresh_token("token")
        assert len(digest) == 64
        assert digest == hash_refresh_token("token")
        assert digest != hash_refresh_token("other")

    @pytest.mark.asyncio
    async def test_is_revoked(self, db_session, regular_user):
        token = RefreshToken(
            user_id=regular_user.id,
            token_hash=hash_refresh_token("t"),
            expires_at=datetime.now(timezone.utc) + timedelta(days=7),
        )
        db_session.add(token)
        await db_session.commit()

        assert token.is_revoked is False
        token.revoked_at = datetime.now(timezone.utc)
        assert token.is_revoked is True
