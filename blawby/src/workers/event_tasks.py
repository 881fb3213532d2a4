"""
Event tasks - drain the outbox and run queued event handlers.

process-outbox-event: oldest unprocessed events first, in batches, each
dispatched through the registry and then marked processed. A dispatch failure
records retry_count/last_error on that event and the drain moves on; the
failed event is picked up again by a later drain (the next request or the
scheduled tick) until outbox_max_retries, then left for inspection. One bad
event never holds back the ones behind it.

process-event-handler: runs one should_queue handler by name.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, and_

from src.config import get_settings
from src.database import async_session_factory
from src.models.domain_event import DomainEvent
from src.schemas.events import BaseEvent

logger = logging.getLogger(__name__)

MAX_BATCHES_PER_RUN = 10


async def _next_batch(batch_size: int, max_retries: int, skip_ids=()) -> list[DomainEvent]:
    conditions = [
        DomainEvent.processed.is_(False),
        DomainEvent.retry_count < max_retries,
    ]
    if skip_ids:
        conditions.append(DomainEvent.event_id.not_in(list(skip_ids)))

    async with async_session_factory() as db:
        result = await db.execute(
            select(DomainEvent)
            .where(and_(*conditions))
            .order_by(DomainEvent.created_at)
            .limit(batch_size)
        )
        return list(result.scalars().all())


async def _mark_event(event_id, error: Optional[Exception] = None) -> None:
    async with async_session_factory() as db:
        record = await db.get(DomainEvent, event_id)
        if record is None:
            return
        if error is None:
            record.processed = True
            record.processed_at = datetime.now(timezone.utc)
            record.last_error = None
        else:
            record.retry_count = (record.retry_count or 0) + 1
            record.last_error = str(error)[:2000]
        await db.commit()


async def process_outbox_event(payload: dict, ctx) -> dict:
    settings = get_settings()
    processed = 0
    failed_ids = set()

    for _ in range(MAX_BATCHES_PER_RUN):
        batch = await _next_batch(settings.outbox_batch_size, settings.outbox_max_retries, failed_ids)
        if not batch:
            break

        for record in batch:
            event = BaseEvent.from_record(record)
            try:
                dispatch = await ctx.registry.dispatch(event)
            except Exception as e:
                logger.error(
                    "Outbox dispatch failed: type=%s event=%s retry=%d/%d error=%s",
                    event.type, str(event.event_id)[:8],
                    (record.retry_count or 0) + 1, settings.outbox_max_retries, str(e),
                )
                await _mark_event(record.event_id, e)
                failed_ids.add(record.event_id)
                continue

            await _mark_event(record.event_id)
            processed += 1
            logger.info(
                "Outbox event processed: type=%s event=%s invoked=%d queued=%d failed=%d",
                event.type, str(event.event_id)[:8],
                len(dispatch.invoked), len(dispatch.queued), len(dispatch.failed),
            )

        if len(batch) < settings.outbox_batch_size:
            break

    if processed or failed_ids:
        logger.info("Outbox drain complete: %d processed, %d failed", processed, len(failed_ids))
    return {"processed": processed, "failed": len(failed_ids)}


async def process_event_handler(payload: dict, ctx) -> dict:
    event = BaseEvent.model_validate(payload["event"])
    handler_name = payload["handler_name"]

    # LookupError for an unknown handler fails the job like any other error
    await ctx.registry.run_handler(event, handler_name)

    logger.info(
        "Queued handler completed: handler=%s type=%s event=%s",
        handler_name, event.type, str(event.event_id)[:8],
    )
    return {"status": "completed", "handler": handler_name, "event_id": str(event.event_id)}
