import asyncio
import os

os.environ.setdefault("ENV", "dev")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("QUOTA_BACKEND", "memory")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("WEBHOOK_ENABLED", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatcore.auth import JwtTokenVerifier  # noqa: E402
from chatcore.config import Settings  # noqa: E402
from chatcore.domain import User  # noqa: E402
from chatcore.gateway import ChatGateway  # noqa: E402
from chatcore.main import create_app  # noqa: E402
from chatcore.quota import MemoryQuota  # noqa: E402
from chatcore.sessions import Session  # noqa: E402
from chatcore.store import MemoryStore  # noqa: E402


class RecordingSession(Session):
    """Keeps every frame pushed to it."""

    def __init__(self, user_id, session_id=None, accept=True):
        super().__init__(user_id, session_id)
        self.frames = []
        self.accept = accept
        self.closed = False

    def push(self, payload):
        if not self.accept:
            return False
        self.frames.append(payload)
        return True

    async def close(self):
        self.closed = True

    def events(self, name=None):
        return [f for f in self.frames if name is None or f["type"] == name]

    def data(self, name):
        return [f["data"] for f in self.events(name)]


def make_settings(**overrides):
    s = Settings()
    s.STORE_TIMEOUT_SECS = 1.0
    s.STORE_RETRY_BACKOFF_SECS = 0.0
    s.CHAT_USER_MSGS_PER_MINUTE = 1000
    for k, v in overrides.items():
        setattr(s, k, v)
    return s


def make_gateway(store=None, **overrides):
    return ChatGateway(store or MemoryStore(), cfg=make_settings(**overrides))


async def seed_users(gw, *ids):
    for uid in ids:
        await gw.store.put_user(User(id=uid, handle=uid, display_name=uid.title()))


async def connect(gw, user_id):
    session = RecordingSession(user_id)
    await gw.join(session)
    return session


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def verifier():
    return JwtTokenVerifier(["test-secret"])


@pytest.fixture
def app(verifier):
    return create_app(MemoryStore(), cfg=make_settings(), verifier=verifier, quota=MemoryQuota(1000))


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(verifier):
    def _auth(user_id, name=None):
        token = verifier.create_access_token(user_id, handle=user_id, name=name or user_id.title())
        return {"Authorization": f"Bearer {token}"}

    return _auth


@pytest.fixture
def token(verifier):
    def _token(user_id):
        return verifier.create_access_token(user_id, handle=user_id, name=user_id.title())

    return _token
