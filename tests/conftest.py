from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from appeal_portal.db.base import Base
from appeal_portal.db.enums import AuthType
from appeal_portal.services.appeal_feed import AppealFeed
from appeal_portal.services.appeal_lifecycle import AppealLifecycleManager, AppealManagerConfig
from appeal_portal.services.identity_service import PortalIdentity, admin_email_predicate

ADMIN_EMAIL = "admin@example.com"


@pytest_asyncio.fixture
async def session_factory():
    pytest.importorskip("aiosqlite")
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def feed(session_factory) -> AppealFeed:
    return AppealFeed(session_factory, timeout_seconds=5.0)


@pytest.fixture
def manager(session_factory, feed) -> AppealLifecycleManager:
    return AppealLifecycleManager(
        AppealManagerConfig(
            session_factory=session_factory,
            is_admin=admin_email_predicate(ADMIN_EMAIL),
            feed=feed,
        )
    )


@pytest.fixture
def admin() -> PortalIdentity:
    return PortalIdentity(
        uid="google-admin-1",
        auth_type=AuthType.GOOGLE,
        email=ADMIN_EMAIL,
        display_name="Staff",
    )


@pytest.fixture
def google_user() -> PortalIdentity:
    return PortalIdentity(
        uid="google-user-1",
        auth_type=AuthType.GOOGLE,
        email="dream@example.com",
        display_name="Dream",
    )


@pytest.fixture
def guest() -> PortalIdentity:
    return PortalIdentity(
        uid="guest-abc123xyz",
        auth_type=AuthType.GUEST,
        email=None,
        display_name="Guest User",
    )
