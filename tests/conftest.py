"""
Pytest configuration and fixtures: a throwaway SQLite store, a recording
stand-in for the Redis pool and an HTTP client bound to the app.
"""
import json

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from progress_sync import commands, schema
from progress_sync.dispatcher import ChangeDispatcher


class RecordingRedis:
    """Records every publish instead of sending it."""

    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 0

    def changes(self, table=None):
        return [
            change for _, change in self.published
            if table is None or change["table"] == table
        ]

    def clear(self):
        self.published.clear()


@pytest.fixture
async def engine(tmp_path):
    """Fresh database file per test"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await schema.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
async def dispatcher():
    dispatcher = ChangeDispatcher(quiet_period=0.02, retry_delay=0.01)
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
async def client(session_factory, redis, dispatcher):
    """HTTP client for the app, wired to the test store without the lifespan"""
    from progress_sync.main import app, configure

    configure(app, session_factory, redis, dispatcher)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def make_order(session_factory, redis, order_number="SO-1001", items=None, **kwargs):
    """Create an order through the command handler and return its aggregate"""
    if items is None:
        items = [{"name": "Bolt M8", "code": "SKU1", "quantity": 5}]
    async with session_factory() as session:
        return await commands.create_order(session, redis, order_number, items, **kwargs)
