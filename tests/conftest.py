"""Shared test fixtures."""
import json
from datetime import datetime, timedelta
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from syncrecovery.models.sync import (  # noqa: F401
    ProgressRecord,
    RecoveryAttempt,
    RetryQueueItem,
    SyncState,
)


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="make_state")
def make_state_fixture(engine):
    """Factory for persisted SyncState rows, timed relative to utcnow()."""

    def _make(
        data_source_id: str = "ds-1",
        source_type: str = "replyio",
        status: str = "syncing",
        updated_minutes_ago: float = 7.0,
        heartbeat_minutes_ago=None,
        **config,
    ) -> SyncState:
        now = datetime.utcnow()
        if heartbeat_minutes_ago is not None:
            config["heartbeat"] = (now - timedelta(minutes=heartbeat_minutes_ago)).isoformat()
        state = SyncState(
            data_source_id=data_source_id,
            source_type=source_type,
            status=status,
            updated_at=now - timedelta(minutes=updated_minutes_ago),
            config_json=json.dumps(config),
        )
        with Session(engine) as s:
            s.add(state)
            s.commit()
            s.refresh(state)
        return state

    return _make


@pytest.fixture(name="add_attempts")
def add_attempts_fixture(engine):
    """Seed RecoveryAttempt rows `minutes_ago` in the past."""

    def _add(
        state: SyncState,
        count: int,
        minutes_ago: float = 10.0,
        action: str = "resume",
        success: bool = True,
    ):
        when = datetime.utcnow() - timedelta(minutes=minutes_ago)
        with Session(engine) as s:
            for i in range(count):
                s.add(RecoveryAttempt(
                    sync_state_id=state.id,
                    timestamp=when + timedelta(seconds=i),
                    action=action,
                    success=success,
                    message=f"seeded {action} {i}",
                ))
            s.commit()

    return _add
