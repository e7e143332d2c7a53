"""Shared fixtures: migrated SQLite databases, stub providers, fake clocks."""

from __future__ import annotations

import asyncio
import gc
import json
import time
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from cachetools import TTLCache
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from streamchat.config import Settings, get_settings
from streamchat.db import dispose_engine, reset_session_factory
from streamchat.providers.base import BaseProvider, ChatChunk, ChatRequest, ModelInfo
from streamchat.services.broadcast import BroadcastHub
from streamchat.services.chat_service import ChatService
from streamchat.services.models import ModelCatalog, ModelResolver


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProvider(BaseProvider):
    """Provider stub that replays scripted chunk sequences.

    Each call to ``chat_stream`` consumes the next script (the last one is
    reused). A script step is a ``ChatChunk`` to yield, an exception to
    raise, or a number of seconds to sleep.
    """

    display_name = "stub"

    def __init__(
        self,
        scripts: list[list[Any]] | None = None,
        models: list[ModelInfo] | Exception | None = None,
    ):
        self.scripts = scripts or [[]]
        self.models = models if models is not None else []
        self.requests: list[ChatRequest] = []
        self.list_calls = 0
        self.closed_streams = 0

    async def list_models(self) -> list[ModelInfo]:
        self.list_calls += 1
        await asyncio.sleep(0)
        if isinstance(self.models, Exception):
            raise self.models
        return list(self.models)

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[ChatChunk]:
        script = self.scripts[min(len(self.requests), len(self.scripts) - 1)]
        self.requests.append(request)
        try:
            for step in script:
                await asyncio.sleep(0)
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, (int, float)):
                    await asyncio.sleep(step)
                    continue
                yield step
        finally:
            self.closed_streams += 1


def chunks(*texts: str | None) -> list[ChatChunk]:
    return [ChatChunk(content=text) for text in texts]


async def no_sleep(_seconds: float) -> None:
    return None


PING = object()


def decode_frames(body: str) -> list[Any]:
    """Split an SSE body into decoded data payloads; keepalives become ``PING``."""
    decoded: list[Any] = []
    for frame in body.split("\n\n"):
        if not frame:
            continue
        if frame == ":":
            decoded.append(PING)
        else:
            assert frame.startswith("data: "), frame
            decoded.append(json.loads(frame[len("data: "):]))
    return decoded


@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).resolve().parent.parent.parent


@pytest.fixture
def tmp_db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


def apply_migrations(db_url: str, project_root: Path) -> None:
    cfg = Config(str(project_root / "backend" / "alembic.ini"))
    cfg.set_main_option("script_location", str(project_root / "backend" / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")


@pytest.fixture
def engine(tmp_db_url: str, project_root: Path):
    apply_migrations(tmp_db_url, project_root)
    engine = create_engine(
        tmp_db_url,
        poolclass=NullPool,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=DELETE;"))
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()
    # Release SQLite file handles
    gc.collect()


@pytest.fixture
def settings(tmp_db_url: str) -> Settings:
    return Settings(_env_file=None, database_url=tmp_db_url, openrouter_api_key="")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_service(session_factory, settings) -> Callable[..., ChatService]:
    """Build a ChatService around a stub provider."""

    def _make(
        provider: BaseProvider,
        *,
        hub: BroadcastHub | None = None,
        clock: Callable[[], float] = time.monotonic,
        service_settings: Settings | None = None,
    ) -> ChatService:
        active = service_settings or settings
        catalog = ModelCatalog(
            provider, TTLCache(maxsize=1, ttl=active.models_cache_ttl_seconds, timer=clock)
        )
        return ChatService(
            provider,
            hub or BroadcastHub(queue_size=active.broadcast_queue_size),
            ModelResolver(catalog, active.default_model),
            session_factory,
            active,
            clock=clock,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def app_client(monkeypatch, engine, tmp_db_url):
    """Factory for TestClients whose app streams from the given provider."""
    from streamchat.main import create_app

    monkeypatch.setenv("DATABASE_URL", tmp_db_url)
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    monkeypatch.setenv("DEBUG", "false")
    get_settings.cache_clear()
    dispose_engine()
    reset_session_factory()

    clients: list[TestClient] = []

    def _make(provider: BaseProvider) -> TestClient:
        app = create_app()
        app.state.provider = provider
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
    get_settings.cache_clear()
    dispose_engine()
    reset_session_factory()
