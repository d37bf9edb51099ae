"""Tests for the resume-vs-reset decision policy."""
from datetime import datetime, timedelta

import pytest

from syncrecovery.models.sync import RecoveryAttempt, SyncState
from syncrecovery.recovery.detector import StuckSync
from syncrecovery.recovery.orchestrator import decide, describe_stuck

NOW = datetime(2025, 1, 15, 12, 0)


def make_stuck(minutes: float = 7.0, resumes: int = 0, resets: int = 0) -> StuckSync:
    state = SyncState(
        id=1,
        data_source_id="ds-1",
        source_type="replyio",
        status="syncing",
        updated_at=NOW - timedelta(minutes=minutes),
    )
    attempts = [
        RecoveryAttempt(sync_state_id=1, action="resume", timestamp=NOW - timedelta(minutes=50 - i))
        for i in range(resumes)
    ] + [
        RecoveryAttempt(sync_state_id=1, action="reset", timestamp=NOW - timedelta(minutes=40 - i))
        for i in range(resets)
    ]
    return StuckSync(
        state=state,
        last_activity=state.updated_at,
        last_heartbeat=None,
        stuck_duration_minutes=minutes,
        recent_attempts=attempts,
    )


def run_decide(stuck, action="auto", force_resume=False):
    return decide(stuck, action, force_resume, max_stuck_minutes=30, max_resume_attempts=3)


class TestAutoMode:
    def test_fresh_stuck_job_resumes(self):
        assert run_decide(make_stuck(7)).action == "resume"

    def test_past_hard_ceiling_resets(self):
        decision = run_decide(make_stuck(31))
        assert decision.action == "reset"
        assert "31 minutes" in decision.reason

    def test_exactly_at_ceiling_still_resumes(self):
        assert run_decide(make_stuck(30)).action == "resume"

    @pytest.mark.parametrize("resumes", [3, 4, 7])
    def test_attempt_budget_spent_resets(self, resumes):
        decision = run_decide(make_stuck(7, resumes=resumes))
        assert decision.action == "reset"
        assert f"{resumes} resume attempts" in decision.reason

    def test_two_resumes_still_resume(self):
        assert run_decide(make_stuck(7, resumes=2)).action == "resume"

    def test_reset_attempts_do_not_count_against_resume_budget(self):
        assert run_decide(make_stuck(7, resumes=2, resets=3)).action == "resume"

    def test_age_guard_wins_regardless_of_attempts(self):
        assert run_decide(make_stuck(45, resumes=0)).action == "reset"


class TestExplicitActions:
    def test_reset_is_unconditional(self):
        assert run_decide(make_stuck(6), action="reset").action == "reset"

    def test_resume_ignores_guards(self):
        assert run_decide(make_stuck(45, resumes=5), action="resume").action == "resume"

    def test_force_resume_in_auto_ignores_guards(self):
        assert run_decide(make_stuck(45, resumes=5), force_resume=True).action == "resume"

    def test_reset_beats_force_resume(self):
        assert run_decide(make_stuck(7), action="reset", force_resume=True).action == "reset"


class TestDescribeStuck:
    def test_detect_view_fields(self):
        view = describe_stuck(make_stuck(7, resumes=1))
        assert view == {
            "platform": "replyio",
            "data_source_id": "ds-1",
            "status": "syncing",
            "stuck_minutes": 7.0,
            "last_heartbeat": None,
            "last_updated": (NOW - timedelta(minutes=7)).isoformat(),
            "recovery_attempts": 1,
        }
