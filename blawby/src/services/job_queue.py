"""
Job queue service - enqueue work into the durable jobs table.

Enqueue is idempotent by job_key: while a job with the same key is waiting,
retrying or running, adding it again is a no-op that returns the existing id.
A job that exhausted its attempts is re-armed instead, so a recovery sweep can
give a stuck webhook a fresh retry budget.

Callers that coalesce "do it again" requests (the outbox drain) pass
rerun_if_running=True: a request that lands while the keyed job is running
moves its run_at past its lock time, and complete_job then re-arms the job
instead of deleting it, so work committed during the run is not left for the
next scheduled tick.

Also pushes a notification to Redis so consumers can wake immediately via
BRPOP instead of waiting for the next poll.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, func, case, and_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.job import Job

logger = logging.getLogger(__name__)

# Task identifiers (routing keys for the worker task list)
TASK_PROCESS_STRIPE_WEBHOOK = "process-stripe-webhook"
TASK_PROCESS_ONBOARDING_WEBHOOK = "process-onboarding-webhook"
TASK_PROCESS_EVENT_HANDLER = "process-event-handler"
TASK_PROCESS_OUTBOX_EVENT = "process-outbox-event"

TASK_NAMES = (
    TASK_PROCESS_STRIPE_WEBHOOK,
    TASK_PROCESS_ONBOARDING_WEBHOOK,
    TASK_PROCESS_EVENT_HANDLER,
    TASK_PROCESS_OUTBOX_EVENT,
)

JOB_NOTIFY_KEY = "blawby:job_notify"
DEFAULT_MAX_ATTEMPTS = 25


class QueueUnavailableError(Exception):
    """The durable queue could not accept the job (database unreachable)."""
    pass


@dataclass(frozen=True)
class EnqueuedJob:
    job_id: str
    created: bool  # inserted or re-armed; False when an existing job absorbed the request
    rerun_requested: bool = False


async def add_job(
    task_identifier: str,
    payload: Optional[dict] = None,
    *,
    job_key: Optional[str] = None,
    max_attempts: Optional[int] = None,
    priority: int = 0,
    delay_seconds: int = 0,
    rerun_if_running: bool = False,
) -> str:
    """
    Enqueue a job for background processing.

    Args:
        task_identifier: Task to run (one of TASK_NAMES)
        payload: Task-specific data as JSON-serializable dict
        job_key: Dedup key - at most one unconsumed job per key
        max_attempts: Attempts before the job is permanently failed
        priority: Higher runs first
        delay_seconds: Delay before the job becomes eligible for processing
        rerun_if_running: Run the keyed job once more if it is running now

    Returns:
        Job ID as string (the existing job's id when deduplicated)

    Raises:
        QueueUnavailableError: the jobs table could not be written
    """
    enqueued = await enqueue_job(
        task_identifier,
        payload,
        job_key=job_key,
        max_attempts=max_attempts,
        priority=priority,
        delay_seconds=delay_seconds,
        rerun_if_running=rerun_if_running,
    )
    return enqueued.job_id


async def enqueue_job(
    task_identifier: str,
    payload: Optional[dict] = None,
    *,
    job_key: Optional[str] = None,
    max_attempts: Optional[int] = None,
    priority: int = 0,
    delay_seconds: int = 0,
    rerun_if_running: bool = False,
) -> EnqueuedJob:
    """add_job, reporting whether the request created work."""
    run_at = datetime.now(timezone.utc)
    if delay_seconds > 0:
        run_at = run_at + timedelta(seconds=delay_seconds)
    attempts_budget = max_attempts or DEFAULT_MAX_ATTEMPTS

    try:
        try:
            async with async_session_factory() as db:
                enqueued = await _upsert_job(
                    db, task_identifier, payload or {}, job_key,
                    attempts_budget, priority, run_at, rerun_if_running,
                )
                await db.commit()
        except IntegrityError:
            # Another producer inserted the same job_key first
            async with async_session_factory() as db:
                existing = await _find_by_key(db, job_key)
                if existing is None:
                    raise
                enqueued = EnqueuedJob(str(existing.id), created=False)
    except IntegrityError as e:
        raise QueueUnavailableError(f"Job insert rejected: {e}") from e
    except (DBAPIError, OSError) as e:
        logger.error(
            "Queue unavailable: task=%s key=%s error=%s",
            task_identifier, job_key, str(e),
        )
        raise QueueUnavailableError(str(e)) from e

    job_id = enqueued.job_id
    if enqueued.rerun_requested:
        logger.info("Rerun requested for running job: task=%s key=%s id=%s", task_identifier, job_key, job_id[:8])
        return enqueued
    if not enqueued.created:
        logger.info(
            "Job already queued: task=%s key=%s id=%s",
            task_identifier, job_key, job_id[:8],
        )
        return enqueued

    logger.info(
        "Job enqueued: task=%s key=%s priority=%d delay=%ds id=%s",
        task_identifier, job_key, priority, delay_seconds, job_id[:8],
    )

    # Wake consumers immediately (non-blocking, best-effort)
    if delay_seconds == 0:
        try:
            from src.utils.redis_client import get_redis
            redis = await get_redis()
            await redis.lpush(JOB_NOTIFY_KEY, job_id)
        except Exception as e:
            logger.debug("Failed to notify job consumers: %s", str(e))

    return enqueued


async def _find_by_key(db: AsyncSession, job_key: Optional[str]) -> Optional[Job]:
    if not job_key:
        return None
    result = await db.execute(select(Job).where(Job.job_key == job_key))
    return result.scalar_one_or_none()


async def _upsert_job(
    db: AsyncSession,
    task_identifier: str,
    payload: dict,
    job_key: Optional[str],
    max_attempts: int,
    priority: int,
    run_at: datetime,
    rerun_if_running: bool = False,
) -> EnqueuedJob:
    """Insert a job, or reuse the one already holding job_key."""
    existing = await _find_by_key(db, job_key)

    if existing is not None:
        if existing.locked_at is None and existing.attempts >= existing.max_attempts:
            # Permanently failed - give it a fresh budget
            existing.task_identifier = task_identifier
            existing.payload = payload
            existing.priority = priority
            existing.attempts = 0
            existing.max_attempts = max_attempts
            existing.run_at = run_at
            existing.last_error = None
            await db.flush()
            logger.info("Re-armed failed job: key=%s id=%s", job_key, str(existing.id)[:8])
            return EnqueuedJob(str(existing.id), created=True)

        if existing.locked_at is None or not rerun_if_running:
            return EnqueuedJob(str(existing.id), created=False)

        # Running: push run_at past the lock so complete_job re-arms it
        result = await db.execute(
            update(Job)
            .where(and_(Job.id == existing.id, Job.locked_at.is_not(None)))
            .values(run_at=run_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return EnqueuedJob(str(existing.id), created=False, rerun_requested=True)
        # Settled between the read and the update
        db.expunge(existing)
        existing = await _find_by_key(db, job_key)
        if existing is not None:
            return EnqueuedJob(str(existing.id), created=False)

    job = Job(
        task_identifier=task_identifier,
        payload=payload,
        job_key=job_key,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        run_at=run_at,
    )
    db.add(job)
    await db.flush()
    return EnqueuedJob(str(job.id), created=True)


async def get_queue_stats(task_identifier: Optional[str] = None) -> dict:
    """
    Count jobs by state, optionally for a single task.

    Returns:
        {"waiting": int, "active": int, "retrying": int, "failed": int}
    """
    unlocked = Job.locked_at.is_(None)
    exhausted = Job.attempts >= Job.max_attempts

    query = select(
        func.sum(case((and_(unlocked, Job.attempts == 0), 1), else_=0)),
        func.sum(case((Job.locked_at.is_not(None), 1), else_=0)),
        func.sum(case((and_(unlocked, Job.attempts > 0, Job.attempts < Job.max_attempts), 1), else_=0)),
        func.sum(case((and_(unlocked, exhausted), 1), else_=0)),
    )
    if task_identifier:
        query = query.where(Job.task_identifier == task_identifier)

    async with async_session_factory() as db:
        row = (await db.execute(query)).one()

    waiting, active, retrying, failed = (int(v or 0) for v in row)
    return {"waiting": waiting, "active": active, "retrying": retrying, "failed": failed}
