from __future__ import annotations

import logging
from datetime import timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gatekeeper.config import SweepConfig
from gatekeeper.core.errors import GatekeeperError
from gatekeeper.domain.entitlements.sweeper import ExpirySweeper

logger = logging.getLogger(__name__)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

GRACE_SWEEP_JOB_ID = "expiry_grace_sweep"
INACTIVE_SWEEP_JOB_ID = "expiry_inactive_sweep"

_sweep_heartbeat = {"runs": 0, "graced": 0, "revoked": 0, "failures": 0}


def sweep_heartbeat() -> dict[str, int]:
    return dict(_sweep_heartbeat)


def build_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(timezone=timezone.utc)


async def job_advance_to_grace(sweeper: ExpirySweeper, horizon_days: int) -> None:
    _sweep_heartbeat["runs"] += 1
    try:
        moved = await sweeper.advance_to_grace(horizon_days)
    except GatekeeperError:
        _sweep_heartbeat["failures"] += 1
        logger.exception("grace sweep failed")
        return
    _sweep_heartbeat["graced"] += len(moved)


async def job_advance_to_inactive(sweeper: ExpirySweeper) -> None:
    _sweep_heartbeat["runs"] += 1
    try:
        revoked = await sweeper.advance_to_inactive()
    except GatekeeperError:
        # the whole batch rolled back; the next run picks the same rows again
        _sweep_heartbeat["failures"] += 1
        logger.exception("inactive sweep failed")
        return
    _sweep_heartbeat["revoked"] += len(revoked)


def register_jobs(scheduler: AsyncIOScheduler, sweeper: ExpirySweeper, cfg: SweepConfig) -> None:
    scheduler.add_job(
        job_advance_to_grace,
        IntervalTrigger(minutes=cfg.interval_minutes),
        args=[sweeper, cfg.grace_horizon_days],
        id=GRACE_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        job_advance_to_inactive,
        IntervalTrigger(minutes=cfg.interval_minutes),
        args=[sweeper],
        id=INACTIVE_SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


__all__ = [
    "GRACE_SWEEP_JOB_ID",
    "INACTIVE_SWEEP_JOB_ID",
    "build_scheduler",
    "job_advance_to_grace",
    "job_advance_to_inactive",
    "register_jobs",
    "sweep_heartbeat",
]
