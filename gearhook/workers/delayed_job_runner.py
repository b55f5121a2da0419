"""
Delayed job runner - executes due scheduled_jobs rows.
Polls every delayed_job_poll_seconds.
"""
import asyncio
import logging

logger = logging.getLogger(__name__)

BATCH_SIZE = 20


async def run_delayed_job_runner(mailer):
    """Main runner loop. Runs continuously."""
    from gearhook.config import get_settings
    from gearhook.utils.redis_client import write_heartbeat

    settings = get_settings()
    logger.info("Delayed job runner started")

    while True:
        try:
            ran = await run_due_jobs(mailer, settings)
            if ran > 0:
                logger.info("Delayed job runner ran %d jobs", ran)
        except Exception as e:
            logger.error("Delayed job runner error: %s", str(e), exc_info=True)

        await write_heartbeat("delayed_job_runner", ttl_seconds=settings.delayed_job_poll_seconds * 10)
        await asyncio.sleep(settings.delayed_job_poll_seconds)


async def run_due_jobs(mailer, settings, session_factory=None) -> int:
    """Recover stuck jobs, then claim and run due ones. Returns count run (succeeded or not)."""
    from gearhook.database import async_session_factory
    from gearhook.models.scheduled_job import ScheduledJob
    from gearhook.services.delayed_jobs import (
        JobContext,
        claim_due_jobs,
        recover_stale_jobs,
        run_job,
    )
    # Registers the job handlers
    import gearhook.services.purchases  # noqa: F401

    session_factory = session_factory or async_session_factory
    ran = 0

    async with session_factory() as db:
        await recover_stale_jobs(db, settings.delayed_job_running_timeout_seconds)
        job_ids = await claim_due_jobs(db, limit=BATCH_SIZE)

    # One session per job so a failed job cannot roll back another
    for job_id in job_ids:
        async with session_factory() as db:
            job = await db.get(ScheduledJob, job_id, populate_existing=True)
            if job is None:
                continue
            await run_job(JobContext(db=db, mailer=mailer, settings=settings), job)
            ran += 1

    return ran
