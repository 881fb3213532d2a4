"""
Webhook recovery worker - re-enqueues stored webhooks that never finished.

Covers the gap where a webhook row was stored but its job could not be
enqueued (queue unavailable) or was lost. Job keys make re-enqueueing a
webhook whose job is still live a no-op. Webhooks that exhausted
max_retries are left alone; replay them with scripts/requeue_webhook.py.
"""
import asyncio
import logging
from typing import Optional

from src.config import get_settings

logger = logging.getLogger(__name__)


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.redis_client import get_redis
        from datetime import datetime, timezone
        redis = await get_redis()
        await redis.set(
            "blawby:worker_health:webhook_recovery",
            datetime.now(timezone.utc).isoformat(),
            ex=600,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_webhook_recovery(stop: Optional[asyncio.Event] = None):
    """Main recovery loop. Runs until stop is set."""
    settings = get_settings()
    stop = stop or asyncio.Event()
    logger.info("Webhook recovery worker started (every %ds)", settings.webhook_recovery_interval_seconds)

    while not stop.is_set():
        try:
            requeued = await sweep_unprocessed_webhooks()
            if requeued > 0:
                logger.info("Webhook recovery re-enqueued %d webhooks", requeued)
        except Exception as e:
            logger.error("Webhook recovery error: %s", str(e), exc_info=True)

        await _heartbeat()
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.webhook_recovery_interval_seconds)
        except asyncio.TimeoutError:
            pass


async def sweep_unprocessed_webhooks() -> int:
    """
    Enqueue a job for every stale unprocessed webhook. Returns how many jobs
    were created; webhooks whose job is still waiting or in backoff are not counted.
    """
    from src.database import async_session_factory
    from src.services.job_queue import QueueUnavailableError, enqueue_job
    from src.services.stripe_webhooks import WEBHOOK_SOURCES
    from src.services.webhook_store import find_webhooks_to_retry

    settings = get_settings()

    async with async_session_factory() as db:
        webhooks = await find_webhooks_to_retry(
            db,
            min_age_seconds=settings.webhook_recovery_min_age_seconds,
            limit=settings.webhook_recovery_batch_size,
        )
        pending = [
            (str(w.id), w.provider_event_id, w.event_type, w.source, w.max_retries - w.retry_count)
            for w in webhooks
        ]

    requeued = 0
    for webhook_id, event_id, event_type, source, remaining in pending:
        config = WEBHOOK_SOURCES.get(source)
        if config is None:
            logger.warning("Webhook %s has unknown source %s, skipping", webhook_id[:8], source)
            continue
        try:
            enqueued = await enqueue_job(
                config.task_identifier,
                {"webhook_id": webhook_id, "event_id": event_id, "event_type": event_type},
                job_key=event_id,
                max_attempts=remaining,
            )
        except QueueUnavailableError as e:
            logger.warning("Webhook recovery stopped, queue unavailable: %s", str(e))
            break
        if enqueued.created:
            requeued += 1

    return requeued
