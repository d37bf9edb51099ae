"""
One-shot recovery pass from the command line (cron-friendly).

Usage:
    python -m syncrecovery recover                       # auto
    python -m syncrecovery recover --action detect       # read-only
    python -m syncrecovery recover --action reset --platform replyio

Prints the same JSON the /recovery endpoint returns.
"""
import argparse
import asyncio
import json
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


async def _recover(
    action: str,
    platform: Optional[str] = None,
    data_source_id: Optional[str] = None,
    force_resume: bool = False,
) -> dict:
    from syncrecovery.db.engine import get_engine
    from syncrecovery.recovery.orchestrator import RecoveryOrchestrator
    from syncrecovery.recovery.worker_client import WorkerClient

    orchestrator = RecoveryOrchestrator(get_engine(), WorkerClient())
    if action == "detect":
        stuck = orchestrator.detect(platform=platform, data_source_id=data_source_id)
        return {"success": True, "stuck_syncs": stuck}

    report = await orchestrator.run(
        action,
        platform=platform,
        data_source_id=data_source_id,
        force_resume=force_resume,
    )
    return report.to_dict()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Detect and recover stuck syncs")
    parser.add_argument(
        "--action",
        choices=["auto", "detect", "resume", "reset"],
        default="auto",
        help="Recovery action (default: auto)",
    )
    parser.add_argument("--platform", help="Only recover syncs of this platform")
    parser.add_argument("--data-source-id", help="Only recover this data source")
    parser.add_argument(
        "--force-resume",
        action="store_true",
        help="Resume even when the auto guards would reset",
    )
    args = parser.parse_args(argv)
    result = asyncio.run(
        _recover(args.action, args.platform, args.data_source_id, args.force_resume)
    )
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
