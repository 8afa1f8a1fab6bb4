from __future__ import annotations

from pathlib import Path

import pytest

from hookrelay.persistence.db import build_engine, build_session_factory, create_schema
from hookrelay.persistence.stores import SQLDeadLetterStore, SQLWebhookStore


@pytest.fixture
async def session_factory(tmp_path: Path, settings):
    # File-backed sqlite so every session sees the same database.
    engine = build_engine(settings, database_url=f"sqlite+aiosqlite:///{tmp_path / 'hookrelay.db'}")
    await create_schema(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SQLWebhookStore:
    return SQLWebhookStore(session_factory)


@pytest.fixture
def sql_dead_letter_store(session_factory) -> SQLDeadLetterStore:
    return SQLDeadLetterStore(session_factory)
