"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and outbound email.
"""
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_JWT_SECRET", "test-admin-jwt-secret")
os.environ.setdefault("WORKERS_ENABLED", "false")

import pytest
from unittest.mock import patch
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from gearhook.config import Settings
from gearhook.database import Base
import gearhook.models  # noqa: F401
from gearhook.utils.webhook_signatures import compute_signature

WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]
ADMIN_JWT_SECRET = os.environ["ADMIN_JWT_SECRET"]


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests (single connection, SAVEPOINT-capable)."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def session_factory(db):
    """Worker-style session factory that hands out the test session."""
    @asynccontextmanager
    async def _factory():
        yield db
    return _factory


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        webhook_secret=WEBHOOK_SECRET,
        admin_jwt_secret=ADMIN_JWT_SECRET,
        workers_enabled=False,
        ingest_store_retry_backoff_seconds=0,
    )


class FakeMailer:
    """Records sends instead of calling SendGrid."""

    def __init__(self, status: str = "sent"):
        self.status = status
        self.sent: list[dict] = []

    async def send(self, to_email, subject, html_content, text_content) -> dict:
        self.sent.append({"to": to_email, "subject": subject, "html": html_content, "text": text_content})
        if self.status == "error":
            return {"message_id": None, "status": "error", "error": "boom"}
        return {"message_id": f"msg_{len(self.sent)}", "status": self.status, "error": None}


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def failing_mailer():
    return FakeMailer(status="error")


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio calls gearhook makes."""

    def __init__(self):
        self.store: dict[str, str] = {}

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def getdel(self, key):
        return self.store.pop(key, None)

    async def ping(self):
        return True


@pytest.fixture
def fake_redis():
    redis = FakeRedis()

    async def _get_redis():
        return redis

    with patch("gearhook.utils.confirmations.get_redis", _get_redis), \
            patch("gearhook.utils.redis_client.get_redis", _get_redis):
        yield redis


def quote_accepted_envelope(
    event_id: str = "evt_001",
    phone: str = "+27825550123",
    conversation_id: str = "conv_P1",
    email: str | None = "thabo@example.com",
    **overrides,
) -> dict:
    payload = {
        "customerName": "Thabo Nkosi",
        "customerPhone": phone,
        "customerEmail": email,
        "whatsappConversationId": conversation_id,
        "totalQuoteAmount": 4500.0,
        "botQuoteAcceptedAt": datetime.now(timezone.utc).isoformat(),
        "items": [
            {
                "name": "Canon EOS R5",
                "brand": "Canon",
                "model": "EOS R5",
                "condition": "Excellent",
                "botEstimatedPrice": 4500.0,
                "imageUrls": ["https://img.example.com/r5.jpg"],
            }
        ],
    }
    envelope = {
        "event_id": event_id,
        "event_type": "quote_accepted",
        "version": "1.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    envelope.update(overrides)
    return envelope


def signed_body(envelope: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    body = json.dumps(envelope).encode()
    return body, compute_signature(body, secret)


@pytest.fixture
def make_envelope():
    return quote_accepted_envelope


@pytest.fixture
def sign_envelope():
    return signed_body


@pytest.fixture
async def client(db, mailer, fake_redis):
    """ASGI client against a fresh app sharing the test session, mailer and Redis."""
    from httpx import ASGITransport, AsyncClient
    from gearhook.database import get_db
    from gearhook.main import create_app

    app = create_app()
    app.state.mailer = mailer

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def staff_headers(user_id: str = "admin-1", role: str = "admin") -> dict:
    import jwt as pyjwt
    token = pyjwt.encode({"sub": user_id, "role": role}, ADMIN_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return staff_headers
