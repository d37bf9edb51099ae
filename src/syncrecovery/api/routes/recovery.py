"""Stuck-sync recovery endpoint (called by cron or manually)."""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlmodel import Session

from syncrecovery.db.engine import get_session
from syncrecovery.recovery.orchestrator import RecoveryOrchestrator
from syncrecovery.recovery.worker_client import WorkerClient

logger = logging.getLogger(__name__)

router = APIRouter()


class RecoveryRequest(BaseModel):
    action: Literal["auto", "detect", "resume", "reset"] = "auto"
    platform: Optional[str] = None
    data_source_id: Optional[str] = None
    force_resume: bool = False


def get_worker_client() -> WorkerClient:
    return WorkerClient()


def get_orchestrator(
    session: Session = Depends(get_session),
    worker: WorkerClient = Depends(get_worker_client),
) -> RecoveryOrchestrator:
    return RecoveryOrchestrator(session.get_bind(), worker)


@router.post("")
async def recover(
    request: RecoveryRequest,
    orchestrator: RecoveryOrchestrator = Depends(get_orchestrator),
):
    """
    Detect stuck syncs and, unless action is "detect", resume or reset them.
    Per-job failures come back as success=false results, never as errors.
    """
    try:
        if request.action == "detect":
            stuck = orchestrator.detect(
                platform=request.platform,
                data_source_id=request.data_source_id,
            )
            return {"success": True, "stuck_syncs": stuck}

        report = await orchestrator.run(
            request.action,
            platform=request.platform,
            data_source_id=request.data_source_id,
            force_resume=request.force_resume,
        )
        return report.to_dict()

    except Exception as exc:
        logger.exception("Recovery request failed")
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
