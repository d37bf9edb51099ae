"""Tests for the one-shot recovery CLI.

_recover() imports its collaborators lazily, so they are patched at their
source module paths.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from syncrecovery.recovery.orchestrator import RecoveryReport, RecoveryResult
from syncrecovery.scripts.recover import _recover, main


def _patches(mock_orchestrator):
    return (
        patch("syncrecovery.db.engine.get_engine"),
        patch("syncrecovery.recovery.worker_client.WorkerClient"),
        patch("syncrecovery.recovery.orchestrator.RecoveryOrchestrator",
              return_value=mock_orchestrator),
    )


class TestRecoverScript:
    @pytest.mark.asyncio
    async def test_detect_is_read_only(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.detect.return_value = [{"platform": "replyio", "stuck_minutes": 7.0}]
        mock_orchestrator.run = AsyncMock()

        p1, p2, p3 = _patches(mock_orchestrator)
        with p1, p2, p3:
            result = await _recover("detect", platform="replyio")

        assert result == {"success": True, "stuck_syncs": [{"platform": "replyio", "stuck_minutes": 7.0}]}
        mock_orchestrator.run.assert_not_awaited()
        mock_orchestrator.detect.assert_called_once_with(platform="replyio", data_source_id=None)

    @pytest.mark.asyncio
    async def test_auto_runs_orchestrator(self):
        mock_orchestrator = MagicMock()
        mock_orchestrator.run = AsyncMock(return_value=RecoveryReport(
            stuck_count=1,
            results=[RecoveryResult("replyio", "ds-1", "reset", 42.0, True, "stuck")],
        ))

        p1, p2, p3 = _patches(mock_orchestrator)
        with p1, p2, p3:
            result = await _recover("auto", force_resume=True)

        assert result["stuck_count"] == 1
        assert result["results"][0]["action"] == "reset"
        mock_orchestrator.run.assert_awaited_once_with(
            "auto", platform=None, data_source_id=None, force_resume=True
        )

    def test_main_prints_json(self, capsys):
        with patch("syncrecovery.scripts.recover._recover",
                   new=AsyncMock(return_value={"success": True, "stuck_syncs": []})) as mock_recover:
            main(["--action", "detect", "--platform", "smartlead"])

        mock_recover.assert_awaited_once_with("detect", "smartlead", None, False)
        assert json.loads(capsys.readouterr().out) == {"success": True, "stuck_syncs": []}

    def test_main_rejects_unknown_action(self):
        with pytest.raises(SystemExit):
            main(["--action", "explode"])
