"""
Webhook store - persistence helpers for the webhook_events table.
Callers own the session and the commit.
"""
import logging
import traceback
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.webhook_event import WebhookEvent
from src.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

# Headers worth keeping for replay/debugging (never auth material)
RECORDED_HEADERS = ("user-agent", "content-type", "x-correlation-id", "x-forwarded-for")


def select_headers(headers: Optional[dict]) -> dict:
    if not headers:
        return {}
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return {k: lowered[k] for k in RECORDED_HEADERS if k in lowered}


async def find_by_provider_event_id(db: AsyncSession, provider_event_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id)
    )
    return result.scalar_one_or_none()


async def get_webhook(db: AsyncSession, webhook_id: Union[str, uuid.UUID]) -> Optional[WebhookEvent]:
    try:
        key = webhook_id if isinstance(webhook_id, uuid.UUID) else uuid.UUID(str(webhook_id))
    except ValueError:
        logger.warning("Invalid webhook id: %s", webhook_id)
        return None
    return await db.get(WebhookEvent, key)


async def create_webhook_event(
    db: AsyncSession,
    *,
    provider_event_id: str,
    source: str,
    event_type: str,
    payload: dict,
    headers: Optional[dict] = None,
    url: Optional[str] = None,
    max_retries: int = 5,
) -> WebhookEvent:
    webhook = WebhookEvent(
        provider_event_id=provider_event_id,
        source=source,
        event_type=event_type,
        payload=payload,
        headers=select_headers(headers),
        url=url,
        processed=False,
        retry_count=0,
        max_retries=max_retries,
        correlation_id=get_correlation_id(),
    )
    db.add(webhook)
    await db.flush()
    return webhook


async def mark_webhook_processed(db: AsyncSession, webhook: WebhookEvent) -> None:
    webhook.processed = True
    webhook.processed_at = datetime.now(timezone.utc)
    webhook.error = None
    webhook.error_stack = None
    await db.flush()


async def mark_webhook_failed(db: AsyncSession, webhook: WebhookEvent, error: BaseException) -> None:
    """Record the failure and consume one retry."""
    webhook.error = str(error) or error.__class__.__name__
    webhook.error_stack = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )
    webhook.retry_count = (webhook.retry_count or 0) + 1
    await db.flush()

    logger.warning(
        "Webhook failed: type=%s event=%s retry=%d/%d error=%s",
        webhook.event_type, webhook.provider_event_id,
        webhook.retry_count, webhook.max_retries, webhook.error[:200],
    )


async def find_webhooks_to_retry(
    db: AsyncSession,
    min_age_seconds: int,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> list[WebhookEvent]:
    """Unprocessed webhooks with retry budget left, older than min_age_seconds."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=min_age_seconds)
    result = await db.execute(
        select(WebhookEvent)
        .where(
            and_(
                WebhookEvent.processed.is_(False),
                WebhookEvent.retry_count < WebhookEvent.max_retries,
                WebhookEvent.received_at <= cutoff,
            )
        )
        .order_by(WebhookEvent.received_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_unprocessed(db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count()).select_from(WebhookEvent).where(WebhookEvent.processed.is_(False))
    )
    return int(result.scalar() or 0)


async def reset_webhook_for_replay(db: AsyncSession, webhook: WebhookEvent) -> None:
    """Give a webhook a fresh retry budget (manual replay)."""
    webhook.processed = False
    webhook.processed_at = None
    webhook.retry_count = 0
    webhook.error = None
    webhook.error_stack = None
    await db.flush()
