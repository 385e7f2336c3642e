"""Shared pytest fixtures."""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Dict

# Configuration is read at import time, so point it at a throwaway database first
_DB_DIR = tempfile.mkdtemp(prefix="tenant-permissions-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'test.sqlite'}"
os.environ["ACCESS_CHECK_RATE_LIMIT"] = "10000/minute"

import pytest_asyncio  # noqa: E402
from fastapi import Depends, Header, HTTPException  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from app.core.database.engine import AsyncSessionLocal, drop_db, get_db, init_db  # noqa: E402
from app.features.organizations.models import Organization, OrganizationMember, Subscription  # noqa: E402
from app.features.permissions.cache import permission_cache  # noqa: E402
from app.features.permissions.constants import OrgRole, SubscriptionStatus  # noqa: E402
from app.features.permissions.service import seed_global_defaults, seed_plan_presets  # noqa: E402
from app.features.users.dependencies import get_current_user  # noqa: E402
from app.features.users.models import User  # noqa: E402
from app.main import app  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def database() -> AsyncIterator[None]:
    """Fresh tables and an empty permission cache for every test."""
    await init_db()
    permission_cache.reset()
    yield
    permission_cache.reset()
    await drop_db()


@pytest_asyncio.fixture()
async def db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


async def _user_from_header(
    x_test_user: str = Header(...),
    db: AsyncSession = Depends(get_db)
) -> User:
    user = await db.get(User, x_test_user)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown test user")
    return user


@pytest_asyncio.fixture()
async def client() -> AsyncIterator[AsyncClient]:
    """HTTPX client bound to the app; authenticate with ``as_user(user_id)`` headers."""
    app.dependency_overrides[get_current_user] = _user_from_header
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def as_user(user_id: str) -> Dict[str, str]:
    return {"X-Test-User": user_id, "Authorization": f"Bearer test-{user_id}"}


def _user(name: str, **kwargs) -> User:
    return User(appwrite_id=f"aw-{name}", email=f"{name}@example.com", name=name.title(), **kwargs)


@pytest_asyncio.fixture()
async def world(db_session: AsyncSession) -> Dict[str, str]:
    """
    Seeded defaults plus one organization on an active pro plan.

    Members: owner, manager, accounts, staff. Also a super admin and an outsider.
    """
    await seed_global_defaults(db_session)
    await seed_plan_presets(db_session)

    users = {
        "super_admin": _user("root", is_super_admin=True),
        "owner": _user("owner"),
        "manager": _user("manager"),
        "accounts": _user("accounts"),
        "staff": _user("staff"),
        "outsider": _user("outsider"),
    }
    db_session.add_all(users.values())
    await db_session.flush()

    org = Organization(name="Acme", owner_id=users["owner"].id)
    db_session.add(org)
    await db_session.flush()

    now = datetime.now(timezone.utc)
    db_session.add(Subscription(
        organization_id=org.id,
        plan="pro",
        status=SubscriptionStatus.ACTIVE.value,
        user_limit=15,
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
    ))
    for role in (OrgRole.OWNER, OrgRole.MANAGER, OrgRole.ACCOUNTS, OrgRole.STAFF):
        db_session.add(OrganizationMember(
            organization_id=org.id,
            user_id=users[role.value].id,
            role=role.value,
        ))
    await db_session.commit()

    ids = {name: user.id for name, user in users.items()}
    ids["org"] = org.id
    return ids
