"""
Job worker - claims jobs from the jobs table and runs their task.

A job is claimed by exactly one consumer (SELECT ... FOR UPDATE SKIP LOCKED,
then locked_at/locked_by), deleted on success, and re-armed with exponential
backoff on failure until attempts reaches max_attempts. A consumer that dies
mid-job leaves a lock that another consumer reclaims after
job_lock_timeout_seconds, so tasks must tolerate being run twice. Settling a
job (complete or fail) only touches the row while this worker still holds
its lock; a job reclaimed in the meantime belongs to its new owner.

Uses BRPOP on the Redis notification key for near-instant wake on new jobs,
falling back to a DB poll every job_poll_interval_seconds.

Run standalone with: python -m src.workers.job_worker
"""
import asyncio
import logging
import os
import signal
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update, and_, or_, delete

from src.config import get_settings
from src.database import async_session_factory
from src.models.job import Job
from src.services.job_queue import (
    JOB_NOTIFY_KEY,
    TASK_PROCESS_EVENT_HANDLER,
    TASK_PROCESS_ONBOARDING_WEBHOOK,
    TASK_PROCESS_OUTBOX_EVENT,
    TASK_PROCESS_STRIPE_WEBHOOK,
)
from src.utils.logging import correlation_scope

logger = logging.getLogger(__name__)

MAX_CLAIM_ROUNDS = 5
HEARTBEAT_TTL_SECONDS = 120


class ClaimedJob:
    """Snapshot of a job row taken at claim time."""

    __slots__ = ("id", "task_identifier", "payload", "job_key", "attempts", "max_attempts", "locked_by")

    def __init__(self, job: Job):
        self.id = job.id
        self.task_identifier = job.task_identifier
        self.payload = dict(job.payload or {})
        self.job_key = job.job_key
        self.attempts = job.attempts
        self.max_attempts = job.max_attempts
        self.locked_by = job.locked_by

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    def __repr__(self) -> str:
        return f"<ClaimedJob {self.task_identifier} {str(self.id)[:8]} attempt={self.attempts}/{self.max_attempts}>"


class TaskContext:
    """Passed to every task alongside its payload."""

    __slots__ = ("registry", "job", "worker_id")

    def __init__(self, registry, job: ClaimedJob, worker_id: str):
        self.registry = registry
        self.job = job
        self.worker_id = worker_id


TaskFn = Callable[[dict, TaskContext], Awaitable[Optional[dict]]]


def get_task_list() -> dict[str, TaskFn]:
    from src.workers.event_tasks import process_event_handler, process_outbox_event
    from src.workers.webhook_tasks import process_onboarding_webhook, process_stripe_webhook

    return {
        TASK_PROCESS_STRIPE_WEBHOOK: process_stripe_webhook,
        TASK_PROCESS_ONBOARDING_WEBHOOK: process_onboarding_webhook,
        TASK_PROCESS_EVENT_HANDLER: process_event_handler,
        TASK_PROCESS_OUTBOX_EVENT: process_outbox_event,
    }


def make_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


def compute_backoff_seconds(attempts: int) -> int:
    """30s, 120s, 480s, ... capped at job_max_backoff_seconds."""
    backoff = 30 * (4 ** max(attempts - 1, 0))
    return min(backoff, get_settings().job_max_backoff_seconds)


async def claim_job(worker_id: str, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
    """Lock the next due job for this worker and count the attempt."""
    now = now or datetime.now(timezone.utc)
    lock_cutoff = now - timedelta(seconds=get_settings().job_lock_timeout_seconds)

    for _ in range(MAX_CLAIM_ROUNDS):
        async with async_session_factory() as db:
            result = await db.execute(
                select(Job)
                .where(
                    or_(
                        and_(
                            Job.locked_at.is_(None),
                            Job.run_at <= now,
                            Job.attempts < Job.max_attempts,
                        ),
                        Job.locked_at < lock_cutoff,
                    )
                )
                .order_by(Job.priority.desc(), Job.run_at, Job.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                return None

            if job.locked_at is not None:
                logger.warning(
                    "Reclaiming job with expired lock: id=%s task=%s previous_owner=%s",
                    str(job.id)[:8], job.task_identifier, job.locked_by,
                )
                if job.attempts >= job.max_attempts:
                    # Died during its final attempt
                    job.locked_at = None
                    job.locked_by = None
                    job.last_error = f"Lock expired during final attempt ({job.attempts}/{job.max_attempts})"
                    await db.commit()
                    continue

            job.locked_at = now
            job.locked_by = worker_id
            job.attempts = job.attempts + 1
            await db.commit()
            return ClaimedJob(job)

    return None


async def complete_job(job: ClaimedJob) -> bool:
    """
    Delete the finished job, or re-arm it when a rerun was requested while it
    ran. Returns False when this worker no longer holds the lock.
    """
    owned = and_(Job.id == job.id, Job.locked_by == job.locked_by)
    async with async_session_factory() as db:
        result = await db.execute(
            delete(Job)
            .where(and_(owned, Job.run_at <= Job.locked_at))
            .execution_options(synchronize_session=False)
        )
        rerun = False
        if not result.rowcount:
            result = await db.execute(
                update(Job)
                .where(owned)
                .values(locked_at=None, locked_by=None, attempts=0, last_error=None)
                .execution_options(synchronize_session=False)
            )
            rerun = bool(result.rowcount)
        await db.commit()

    if not result.rowcount:
        logger.warning(
            "Lost lock before completion: id=%s task=%s owner=%s",
            str(job.id)[:8], job.task_identifier, job.locked_by,
        )
        return False
    if rerun:
        logger.info("Job re-armed for requested rerun: id=%s task=%s", str(job.id)[:8], job.task_identifier)
    return True


async def fail_job(job: ClaimedJob, error: BaseException, now: Optional[datetime] = None) -> dict:
    """
    Unlock the job with its error.
    Returns {"terminal": bool, "backoff_seconds": int|None}, plus "lost_lock"
    when another worker reclaimed the job in the meantime (nothing is changed).
    """
    now = now or datetime.now(timezone.utc)
    async with async_session_factory() as db:
        result = await db.execute(
            select(Job).where(Job.id == job.id).with_for_update()
        )
        record = result.scalar_one_or_none()
        if record is None or record.locked_by != job.locked_by:
            logger.warning(
                "Lost lock before failure was recorded: id=%s task=%s owner=%s error=%s",
                str(job.id)[:8], job.task_identifier, job.locked_by, str(error)[:200],
            )
            return {"terminal": False, "backoff_seconds": None, "lost_lock": True}

        record.locked_at = None
        record.locked_by = None
        record.last_error = (str(error) or error.__class__.__name__)[:2000]

        if record.attempts >= record.max_attempts:
            await db.commit()
            logger.error(
                "Job failed permanently: id=%s task=%s attempts=%d error=%s",
                str(job.id)[:8], job.task_identifier, record.attempts, record.last_error[:200],
            )
            return {"terminal": True, "backoff_seconds": None}

        backoff = compute_backoff_seconds(record.attempts)
        record.run_at = now + timedelta(seconds=backoff)
        await db.commit()

    logger.warning(
        "Job retry %d/%d: id=%s task=%s backoff=%ds",
        job.attempts, job.max_attempts, str(job.id)[:8], job.task_identifier, backoff,
    )
    return {"terminal": False, "backoff_seconds": backoff}


async def execute_job(job: ClaimedJob, registry, worker_id: str) -> dict:
    """Run one claimed job and settle it (complete or fail)."""
    cid = job.id.hex if isinstance(job.id, uuid.UUID) else str(job.id)
    with correlation_scope(cid):
        return await _run_and_settle(job, registry, worker_id)


async def _run_and_settle(job: ClaimedJob, registry, worker_id: str) -> dict:
    task = get_task_list().get(job.task_identifier)

    if task is None:
        error = LookupError(f"Unknown task identifier: {job.task_identifier}")
        logger.error("Unknown task: id=%s task=%s", str(job.id)[:8], job.task_identifier)
        outcome = await fail_job(job, error)
        return {"status": "failed", "error": str(error), **outcome}

    try:
        result = await task(job.payload, TaskContext(registry, job, worker_id))
    except Exception as e:
        logger.error(
            "Job error: id=%s task=%s attempt=%d/%d error=%s",
            str(job.id)[:8], job.task_identifier, job.attempts, job.max_attempts, str(e),
            exc_info=True,
        )
        outcome = await fail_job(job, e)
        return {"status": "failed", "error": str(e), **outcome}

    if not await complete_job(job):
        return {"status": "lost_lock", "result": result}
    logger.info("Job completed: id=%s task=%s", str(job.id)[:8], job.task_identifier)
    return {"status": "completed", "result": result}


async def _heartbeat(worker_id: str):
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(
            f"blawby:worker_health:{worker_id}",
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def _wait_for_work(poll_seconds: int) -> None:
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        # BRPOP blocks until a notification arrives or timeout expires
        await redis.brpop(JOB_NOTIFY_KEY, timeout=poll_seconds)
    except Exception as e:
        # If Redis is unavailable, fall back to sleep
        logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
        await asyncio.sleep(poll_seconds)


async def run_job_consumer(registry, worker_id: str, stop: Optional[asyncio.Event] = None):
    """Consumer loop - run jobs back to back, wait for a wake-up when idle."""
    settings = get_settings()
    stop = stop or asyncio.Event()
    logger.info("Job consumer started: %s", worker_id, extra={"worker_id": worker_id})

    while not stop.is_set():
        job = None
        try:
            job = await claim_job(worker_id)
            if job is not None:
                await execute_job(job, registry, worker_id)
        except Exception as e:
            logger.error("Job consumer cycle error: %s", str(e), exc_info=True)

        await _heartbeat(worker_id)

        if job is None and not stop.is_set():
            await _wait_for_work(settings.job_poll_interval_seconds)

    logger.info("Job consumer stopped: %s", worker_id)


async def run_outbox_scheduler(stop: Optional[asyncio.Event] = None):
    """Request an outbox drain on a fixed interval (catches events from any publisher)."""
    from src.services.event_publisher import request_outbox_drain

    settings = get_settings()
    stop = stop or asyncio.Event()
    logger.info("Outbox scheduler started (every %ds)", settings.outbox_poll_interval_seconds)

    while not stop.is_set():
        try:
            await request_outbox_drain()
        except Exception as e:
            logger.error("Outbox scheduler error: %s", str(e), exc_info=True)
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.outbox_poll_interval_seconds)
        except asyncio.TimeoutError:
            pass


async def run_worker_process(registry=None, stop: Optional[asyncio.Event] = None):
    """Consumers + outbox scheduler + webhook recovery sweep until stop is set."""
    from src.services.event_handlers import build_event_registry
    from src.workers.webhook_recovery import run_webhook_recovery

    settings = get_settings()
    registry = registry or build_event_registry()
    stop = stop or asyncio.Event()

    tasks = [
        asyncio.create_task(run_job_consumer(registry, make_worker_id(i), stop))
        for i in range(settings.webhook_worker_concurrency)
    ]
    tasks.append(asyncio.create_task(run_outbox_scheduler(stop)))
    tasks.append(asyncio.create_task(run_webhook_recovery(stop)))
    logger.info("Worker process started: %d consumers", settings.webhook_worker_concurrency)

    try:
        await stop.wait()
    finally:
        stop.set()
        for t in tasks:
            t.cancel()
        await asyncio.wait(tasks, timeout=10)
        logger.info("Worker process stopped")


def main():
    from src.utils.logging import configure_structured_logging

    settings = get_settings()
    configure_structured_logging(settings.log_level, service="blawby-worker")

    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    async def _run():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await run_worker_process(stop=stop)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
