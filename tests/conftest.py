"""
Shared pytest fixtures for the webhook delivery test suite.

Every test gets its own SQLite file database so that concurrent sessions
behave like separate connections.
"""
import os

# Must be set before wa_gateway.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("WEBHOOK_SIGN_PAYLOADS", "true")

import httpx
import pytest
import pytest_asyncio
from unittest.mock import Mock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from wa_gateway.models.base import Base
from wa_gateway.models.account import WhatsAppAccount
from wa_gateway.models.webhook import Webhook
from wa_gateway.models.delivery import DeliveryRecord  # noqa: F401
from wa_gateway.services.delivery_store import DeliveryStore
from wa_gateway.services.http_delivery import WebhookHttpClient


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def empty_session_factory(tmp_path):
    """Session factory over a database where no migration has run."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return DeliveryStore(session_factory, retry_attempts=3, retry_base_delay=0)


@pytest_asyncio.fixture
async def account(session_factory):
    """An account with two active webhooks and one inactive one."""
    async with session_factory() as db:
        account = WhatsAppAccount(id="acc-1", name="Support line", phone_number="919800000000")
        db.add(account)
        db.add_all([
            Webhook(id="wh-1", account_id=account.id, url="https://one.example.com/hook", secret="s3cret"),
            Webhook(id="wh-2", account_id=account.id, url="https://two.example.com/hook"),
            Webhook(id="wh-3", account_id=account.id, url="https://off.example.com/hook", is_active=False),
        ])
        await db.commit()
    return account


@pytest.fixture
def webhook_target():
    return {"id": "wh-1", "url": "https://one.example.com/hook", "secret": "s3cret"}


@pytest.fixture
def metrics():
    return Mock()


class RecordingTransport:
    """
    Builds an httpx.MockTransport that records requests.

    handler(request) -> httpx.Response; raise an httpx error to simulate a
    network failure.
    """

    def __init__(self, handler=None):
        self.requests: list[httpx.Request] = []
        self._handler = handler or (lambda request: httpx.Response(200, json={"ok": True}))
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


@pytest.fixture
def http_client_factory():
    def _make(handler=None, **kwargs):
        recorder = RecordingTransport(handler)
        return WebhookHttpClient(transport=recorder.transport, **kwargs), recorder
    return _make
