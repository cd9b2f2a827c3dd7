from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import BadRequest, Conflict, NotFound
from promorang.db import atomic
from promorang.models.automations import CronJob
from promorang.models.ledger import LedgerEntry
from promorang.services.settlement_service import distribute_stake_rewards

logger = logging.getLogger(__name__)


async def reset_daily_master_keys(db: AsyncSession, now: datetime | None = None) -> dict:
    """Close yesterday's conversion window.

    Daily conversion totals are summed from ``convert`` entries since UTC
    midnight, so the allowance rolls over by itself; the job reports how many
    users had used part of the window that just closed.
    """
    window_start = datetime.combine((now or datetime.utcnow()).date(), datetime.min.time())
    users = (await db.execute(
        select(func.count(func.distinct(LedgerEntry.user_id))).where(
            LedgerEntry.event_type == "convert",
            LedgerEntry.created_at >= window_start - timedelta(days=1),
            LedgerEntry.created_at < window_start,
        )
    )).scalar_one()
    logger.info("daily conversion window reset at %s for %s users", window_start.isoformat(), users)
    return {"window_start": window_start.isoformat(), "users_reset": int(users)}


# job_name -> async fn(db, now=None)
JOBS = {
    "daily_master_key_reset": reset_daily_master_keys,
    "staking_rewards_distribution": distribute_stake_rewards,
}


async def list_cron_jobs(db: AsyncSession) -> list[CronJob]:
    return list((await db.execute(
        select(CronJob).order_by(CronJob.job_name).execution_options(populate_existing=True)
    )).scalars().all())


async def _get_job(db: AsyncSession, job_name: str) -> CronJob:
    job = (await db.execute(
        select(CronJob).where(CronJob.job_name == job_name).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if not job or job_name not in JOBS:
        raise NotFound("Automation job")
    return job


async def update_cron_job(
    db: AsyncSession,
    job_name: str,
    enabled: bool | None = None,
    status: str | None = None,
    next_run_at: datetime | None = None,
) -> CronJob:
    if enabled is None and status is None and next_run_at is None:
        raise BadRequest("No updates provided")
    # 只允许手动把卡住的任务改回 idle
    if status is not None and status != "idle":
        raise BadRequest("Status can only be reset to idle")
    job = await _get_job(db, job_name)

    async with atomic(db):
        if enabled is not None:
            job.enabled = enabled
        if status is not None:
            job.status = status
        if next_run_at is not None:
            job.next_run_at = next_run_at
    return job


async def _finish(db: AsyncSession, job_name: str, status: str, elapsed_ms: int, error: str | None) -> None:
    async with atomic(db):
        await db.execute(
            update(CronJob)
            .where(CronJob.job_name == job_name)
            .values(status=status, execution_time_ms=elapsed_ms, error_message=error)
            .execution_options(synchronize_session=False)
        )


async def run_automation(db: AsyncSession, job_name: str, now: datetime | None = None) -> dict:
    """Run one registered job, recording its status and timing on the ``cron_jobs`` row."""
    job = await _get_job(db, job_name)
    if not job.enabled:
        raise Conflict("Automation job is disabled")

    async with atomic(db):
        claimed = await db.execute(
            update(CronJob)
            .where(CronJob.job_name == job_name, CronJob.status != "running")
            .values(status="running", last_run_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise Conflict("Automation job is already running")

    started = time.perf_counter()
    try:
        result = await JOBS[job_name](db, now=now)
    except Exception as exc:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.error("automation %s failed after %sms: %s", job_name, elapsed_ms, exc)
        await _finish(db, job_name, "failed", elapsed_ms, str(exc)[:500])
        raise

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    await _finish(db, job_name, "completed", elapsed_ms, None)
    logger.info("automation %s completed in %sms", job_name, elapsed_ms)
    return {"job_name": job_name, "status": "completed", "execution_time_ms": elapsed_ms, "result": result}
