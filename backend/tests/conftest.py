"""Shared fixtures: a throwaway sqlite database, seeded users and an app client."""
import asyncio
import os
import tempfile
from types import SimpleNamespace

_DB_DIR = tempfile.mkdtemp(prefix="hotelchat-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from hotelchat.auth import create_access_token, get_password_hash
from hotelchat.db import Base, SessionLocal, engine
from hotelchat.main import app
from hotelchat.models import User, UserRole
from hotelchat.rooms import presence

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)


async def _reset_schema():
    from hotelchat import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _create_users(specs):
    async with SessionLocal() as db:
        users = [
            User(email=email, password_hash=PASSWORD_HASH, display_name=name, role=role.value)
            for email, name, role in specs
        ]
        db.add_all(users)
        await db.commit()
        return users


def run(coro):
    """Run ``coro`` on a private loop so the test's own event loop is left alone."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def seed_users(*specs):
    """Create users from ``(email, display_name, role)`` tuples outside any running loop."""
    return run(_create_users(specs))


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def fresh_db():
    run(_reset_schema())
    presence.clear()
    yield
    presence.clear()


@pytest.fixture
def people():
    """One user per role plus a second customer, each with a valid token."""
    carla, cody, olga, sam = seed_users(
        ("carla@example.com", "Carla", UserRole.CUSTOMER),
        ("cody@example.com", "Cody", UserRole.CUSTOMER),
        ("olga@example.com", "Olga", UserRole.HOTEL_OWNER),
        ("sam@example.com", "Sam", UserRole.SUPPORT),
    )
    ns = SimpleNamespace(customer=carla, customer2=cody, owner=olga, support=sam)
    ns.tokens = {u.id: create_access_token(str(u.id)) for u in (carla, cody, olga, sam)}
    return ns


@pytest.fixture
def api():
    # entering the context keeps one event loop for HTTP calls and open sockets
    with TestClient(app) as client:
        yield client
