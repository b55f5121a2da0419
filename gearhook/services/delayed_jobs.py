"""
Durable delayed jobs - "do X at time T unless cancelled first".

One pending job per (kind, entity). Scheduling again moves the run time;
cancelling is the undo. The runner (workers/delayed_job_runner.py) claims
due jobs with a conditional pending -> running update, so a cancel that
arrives after the claim loses and reports False.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gearhook.config import Settings
from gearhook.models.scheduled_job import ScheduledJob
from gearhook.schemas.related_entity import RelatedEntity, to_columns
from gearhook.services.event_store import truncate_error
from gearhook.services.mailer import Mailer

logger = logging.getLogger(__name__)

# Retry backoff in minutes, indexed by attempt number
BACKOFF_MINUTES = [1, 5, 15, 60]


@dataclass
class JobContext:
    db: AsyncSession
    mailer: Mailer
    settings: Settings


JobFn = Callable[[JobContext, ScheduledJob], Awaitable[None]]

_job_handlers: dict[str, JobFn] = {}


def job_handler(kind: str):
    """Register the function that runs jobs of this kind."""
    def decorator(fn: JobFn) -> JobFn:
        _job_handlers[kind] = fn
        return fn
    return decorator


def get_job_handler(kind: str) -> Optional[JobFn]:
    return _job_handlers.get(kind)


async def schedule_job(
    db: AsyncSession,
    kind: str,
    entity: RelatedEntity,
    run_at: datetime,
    payload: Optional[dict] = None,
) -> ScheduledJob:
    """Create the pending job for this entity, or move the existing one. Caller commits."""
    entity_type, entity_id = to_columns(entity)
    result = await db.execute(
        select(ScheduledJob).where(
            ScheduledJob.kind == kind,
            ScheduledJob.entity_type == entity_type,
            ScheduledJob.entity_id == entity_id,
            ScheduledJob.status == "pending",
        ).limit(1)
    )
    job = result.scalar_one_or_none()
    if job is not None:
        job.run_at = run_at
        job.payload = payload or {}
        logger.info("Rescheduled %s for %s:%s to %s", kind, entity_type, entity_id, run_at.isoformat())
        return job

    job = ScheduledJob(
        kind=kind,
        entity_type=entity_type,
        entity_id=entity_id,
        run_at=run_at,
        status="pending",
        payload=payload or {},
    )
    db.add(job)
    await db.flush()
    logger.info("Scheduled %s for %s:%s at %s", kind, entity_type, entity_id, run_at.isoformat())
    return job


async def cancel_job(db: AsyncSession, kind: str, entity: RelatedEntity) -> bool:
    """Cancel the pending job. False if there was none (already running, done, or never scheduled)."""
    entity_type, entity_id = to_columns(entity)
    result = await db.execute(
        update(ScheduledJob)
        .where(
            ScheduledJob.kind == kind,
            ScheduledJob.entity_type == entity_type,
            ScheduledJob.entity_id == entity_id,
            ScheduledJob.status == "pending",
        )
        .values(status="cancelled", cancelled_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount > 0
    if cancelled:
        logger.info("Cancelled %s for %s:%s", kind, entity_type, entity_id)
    return cancelled


async def claim_due_jobs(db: AsyncSession, limit: int = 20) -> list:
    """Claim up to `limit` due jobs (pending -> running). Commits the claims, returns their ids."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(ScheduledJob.id)
        .where(ScheduledJob.status == "pending", ScheduledJob.run_at <= now)
        .order_by(ScheduledJob.run_at)
        .limit(limit)
    )
    candidate_ids = [row[0] for row in result.all()]

    claimed_ids = []
    for job_id in candidate_ids:
        claim = await db.execute(
            update(ScheduledJob)
            .where(ScheduledJob.id == job_id, ScheduledJob.status == "pending")
            .values(
                status="running",
                started_at=now,
                attempt_count=ScheduledJob.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 1:
            claimed_ids.append(job_id)
    await db.commit()
    return claimed_ids


async def run_job(ctx: JobContext, job: ScheduledJob) -> bool:
    """Run one claimed job. Returns True on success; failures are rescheduled or marked dead."""
    db = ctx.db
    job_id = job.id
    now = datetime.now(timezone.utc)
    handler = get_job_handler(job.kind)

    try:
        if handler is None:
            raise LookupError(f"No job handler registered for {job.kind}")
        await handler(ctx, job)
    except Exception as e:
        await db.rollback()
        job = await db.get(ScheduledJob, job_id, populate_existing=True)
        job.last_error = truncate_error(f"{type(e).__name__}: {e}", 1000)
        if job.attempt_count >= job.max_attempts or handler is None:
            job.status = "dead"
            job.finished_at = now
            logger.error(
                "Job %s (%s) dead after %d attempts: %s",
                str(job.id)[:8], job.kind, job.attempt_count, str(e),
                extra={"job_id": str(job.id)},
            )
        else:
            idx = min(job.attempt_count - 1, len(BACKOFF_MINUTES) - 1)
            job.status = "pending"
            job.run_at = now + timedelta(minutes=BACKOFF_MINUTES[idx])
            logger.warning(
                "Job %s (%s) failed (attempt %d), retrying at %s: %s",
                str(job.id)[:8], job.kind, job.attempt_count, job.run_at.isoformat(), str(e),
                extra={"job_id": str(job.id)},
            )
        await db.commit()
        return False

    job.status = "done"
    job.finished_at = now
    job.last_error = None
    await db.commit()
    logger.info("Job %s (%s) done", str(job.id)[:8], job.kind, extra={"job_id": str(job.id)})
    return True


async def recover_stale_jobs(db: AsyncSession, running_timeout_seconds: int) -> int:
    """
    Hand back jobs left `running` by a runner that died mid-job.
    Back to pending while attempts remain, else dead. A job whose entity has
    since been rescheduled is cancelled instead, leaving the newer pending job.
    Commits; returns how many were recovered.
    """
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=running_timeout_seconds)
    result = await db.execute(
        select(ScheduledJob)
        .where(ScheduledJob.status == "running", ScheduledJob.started_at < cutoff)
        .execution_options(populate_existing=True)
    )
    stale = list(result.scalars().all())

    recovered = 0
    for job in stale:
        sibling = await db.execute(
            select(ScheduledJob.id).where(
                ScheduledJob.kind == job.kind,
                ScheduledJob.entity_type == job.entity_type,
                ScheduledJob.entity_id == job.entity_id,
                ScheduledJob.status == "pending",
            ).limit(1)
        )
        if sibling.scalar_one_or_none() is not None:
            values = {"status": "cancelled", "cancelled_at": now}
        elif job.attempt_count >= job.max_attempts:
            values = {"status": "dead", "finished_at": now}
        else:
            values = {"status": "pending", "run_at": now}

        claim = await db.execute(
            update(ScheduledJob)
            .where(
                ScheduledJob.id == job.id,
                ScheduledJob.status == "running",
                ScheduledJob.started_at < cutoff,
            )
            .values(last_error="Runner timed out while job was running", **values)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 1:
            recovered += 1
            logger.warning(
                "Recovered stuck job %s (%s) -> %s",
                str(job.id)[:8], job.kind, values["status"],
                extra={"job_id": str(job.id)},
            )
    await db.commit()
    return recovered
