"""Shared fixtures: an in-memory Motor database, seeded users, and an app wired to it."""
import asyncio

import jwt
import pytest
import pytest_asyncio
from bson import ObjectId
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from app.config import Settings
from app.database.connection import mongo_db_dependency
from app.main import create_app
from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository

TEST_SECRET = "test-secret"


def make_token(user_id: str) -> str:
    return jwt.encode({"sub": user_id}, TEST_SECRET, algorithm="HS256")


class FakeSocket:
    """Stands in for a starlette WebSocket: records every frame sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    def events(self):
        return [frame["event"] for frame in self.sent]


async def settle(rounds: int = 5):
    """Let background notification tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _prepare(db, users):
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await db["users"].insert_many([dict(u) for u in users])


@pytest.fixture
def users():
    return {
        name: {
            "_id": ObjectId(),
            "firstName": name,
            "lastName": "Tester",
            "email": f"{name.lower()}@example.edu",
            "profilePhoto": None,
            "role": "STUDENT",
        }
        for name in ("Alice", "Bob", "Carol")
    }


@pytest.fixture
def user_ids(users):
    return {name: str(doc["_id"]) for name, doc in users.items()}


@pytest.fixture
def current_user(users, user_ids):
    """current_user("Alice") -> the user dict the identity layer hands to services."""
    def _current(name):
        return {**users[name], "_id": user_ids[name]}
    return _current


@pytest_asyncio.fixture
async def db(users):
    database = AsyncMongoMockClient()["dm_test"]
    await _prepare(database, users.values())
    return database


@pytest.fixture
def api_db(users):
    database = AsyncMongoMockClient()["dm_api_test"]
    asyncio.run(_prepare(database, users.values()))
    return database


@pytest.fixture
def app(api_db):
    application = create_app(
        Settings(jwt_secret=TEST_SECRET, ensure_indexes=False, redis_url=None, log_level="WARNING")
    )
    application.dependency_overrides[mongo_db_dependency] = lambda: api_db
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(user_ids):
    def _headers(name):
        return {"Authorization": f"Bearer {make_token(user_ids[name])}"}
    return _headers
