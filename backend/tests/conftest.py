"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.gateway import InMemoryGateway
from app.models import Base
from app.monitoring.registry import registry
from support import CONVERSATION_ID, JUDGE_ID, QUESTION_ID, USER_ID, at


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    for metric in registry._metrics.values():
        metric.clear()
    yield
    for metric in registry._metrics.values():
        metric.clear()


@pytest.fixture()
def settings() -> Settings:
    """Settings with delays short enough for tests."""

    return Settings(
        realtime_typing_ttl_seconds=0.2,
        realtime_resubscribe_delay_seconds=0.01,
        optimistic_timeout_seconds=5.0,
        read_receipt_delay_seconds=0.01,
        sender_lookup_attempts=2,
        sender_lookup_backoff_seconds=0.01,
        notification_window=50,
        card_search_url="https://cards.test",
    )


@pytest.fixture()
def gateway() -> InMemoryGateway:
    """In-memory gateway seeded with an asker, a judge and their active conversation."""

    gateway = InMemoryGateway()
    gateway.seed("profiles", {"id": USER_ID, "username": "asker", "display_name": "Asker"})
    gateway.seed("profiles", {"id": JUDGE_ID, "username": "judge", "display_name": "Judge", "is_judge": True})
    gateway.seed(
        "conversations",
        {
            "id": CONVERSATION_ID,
            "question_id": QUESTION_ID,
            "user_id": USER_ID,
            "judge_id": JUDGE_ID,
            "status": "active",
            "started_at": at(0),
        },
    )
    return gateway


@pytest.fixture()
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll ``predicate`` until it holds; fails the test after ``timeout`` seconds."""

    async def wait(predicate: Callable[[], Any], timeout: float = 2.0, interval: float = 0.005) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(interval)

    return wait


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """Yield a FastAPI TestClient running the service lifecycle."""

    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
