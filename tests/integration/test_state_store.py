"""Integration tests for SyncStateStore against in-memory SQLite."""
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session

from syncrecovery.sync.state_store import SyncStateStore


@pytest.fixture
def store(engine):
    return SyncStateStore(engine)


class TestReads:
    def test_create_and_get(self, store):
        store.create("ds-1", "replyio", status="syncing", config={"batch_number": 2})
        state = store.get("ds-1")
        assert state.source_type == "replyio"
        assert state.status == "syncing"
        assert state.load_config() == {"batch_number": 2}

    def test_get_missing_returns_none(self, store):
        assert store.get("nope") is None

    def test_list_active_only_returns_syncing_and_partial(self, store):
        store.create("a", "replyio", status="syncing")
        store.create("b", "replyio", status="partial")
        store.create("c", "replyio", status="idle")
        store.create("d", "replyio", status="error")
        store.create("e", "replyio", status="completed")
        assert [s.data_source_id for s in store.list_active()] == ["a", "b"]

    def test_list_all(self, store):
        store.create("a", "replyio")
        store.create("b", "smartlead")
        assert [s.data_source_id for s in store.list_all()] == ["a", "b"]


class TestWorkerWrites:
    def test_heartbeat_merges_config_and_bumps_updated_at(self, store, make_state):
        state = make_state("ds-1", batch_number=3, phase="x")
        updated = store.record_heartbeat("ds-1", batch_number=4)

        config = updated.load_config()
        assert config["batch_number"] == 4
        assert config["phase"] == "x"
        assert updated.heartbeat() is not None
        assert updated.updated_at > state.updated_at

    def test_heartbeat_unknown_source_raises(self, store):
        with pytest.raises(KeyError):
            store.record_heartbeat("ghost")

    def test_set_status_completed_stamps_last_sync_at(self, store, make_state):
        make_state("ds-1")
        state = store.set_status("ds-1", "completed")
        assert state.status == "completed"
        assert state.last_sync_at is not None
        assert state.last_sync_error is None

    def test_set_status_error_records_message(self, store, make_state):
        make_state("ds-1")
        state = store.set_status("ds-1", "error", error="API 401")
        assert state.last_sync_error == "API 401"
        assert state.last_sync_at is None


class TestCompareAndSet:
    def test_applies_when_unchanged(self, store, make_state, engine):
        state = make_state("ds-1")
        with Session(engine) as s:
            assert store.compare_and_set(s, state.id, state.updated_at, status="error")
            s.commit()
        fresh = store.get("ds-1")
        assert fresh.status == "error"
        assert fresh.updated_at > state.updated_at

    def test_rejected_after_concurrent_write(self, store, make_state, engine):
        state = make_state("ds-1")
        store.record_heartbeat("ds-1")

        with Session(engine) as s:
            assert not store.compare_and_set(s, state.id, state.updated_at, status="error")
            s.commit()
        assert store.get("ds-1").status == "syncing"

    def test_rejected_while_another_pass_holds_a_claim(self, store, make_state, engine):
        state = make_state("ds-1")
        with Session(engine) as s:
            assert store.claim(s, state.id, state.updated_at, None, datetime.utcnow())
            s.commit()

        with Session(engine) as s:
            assert not store.compare_and_set(s, state.id, state.updated_at, status="error")
            s.commit()
        assert store.get("ds-1").status == "syncing"


class TestClaim:
    def test_claim_stamps_without_touching_updated_at(self, store, make_state, engine):
        state = make_state("ds-1")
        claimed_at = datetime.utcnow()

        with Session(engine) as s:
            assert store.claim(s, state.id, state.updated_at, None, claimed_at)
            s.commit()

        fresh = store.get("ds-1")
        assert fresh.recovery_claimed_at == claimed_at
        assert fresh.updated_at == state.updated_at

    def test_second_claim_on_same_observation_loses(self, store, make_state, engine):
        state = make_state("ds-1")
        with Session(engine) as s:
            assert store.claim(s, state.id, state.updated_at, None, datetime.utcnow())
            s.commit()
        with Session(engine) as s:
            assert not store.claim(s, state.id, state.updated_at, None, datetime.utcnow())

    def test_claim_rejected_after_worker_write(self, store, make_state, engine):
        state = make_state("ds-1")
        store.record_heartbeat("ds-1")
        with Session(engine) as s:
            assert not store.claim(s, state.id, state.updated_at, None, datetime.utcnow())

    def test_expired_claim_can_be_reclaimed(self, store, make_state, engine):
        state = make_state("ds-1")
        first = datetime.utcnow() - timedelta(minutes=10)
        with Session(engine) as s:
            store.claim(s, state.id, state.updated_at, None, first)
            s.commit()
        with Session(engine) as s:
            assert store.claim(s, state.id, state.updated_at, first, datetime.utcnow())
            s.commit()

    def test_reset_conditioned_on_own_claim(self, store, make_state, engine):
        state = make_state("ds-1")
        claimed_at = datetime.utcnow()
        with Session(engine) as s:
            store.claim(s, state.id, state.updated_at, None, claimed_at)
            s.commit()
        with Session(engine) as s:
            assert store.compare_and_set(s, state.id, state.updated_at, claimed_at, status="error")
            s.commit()
        assert store.get("ds-1").status == "error"
