"""
Stripe webhook ingestion - verify, store idempotently, enqueue.

verify_and_store() checks the signature before touching the database, then
records exactly one webhook_events row per Stripe event id. Redeliveries of
an event that was already processed are reported as duplicates; redeliveries
of a still-pending event return the existing row so it can be re-enqueued
(the job key makes that a no-op while its job is live).
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from src.config import get_settings
from src.database import async_session_factory
from src.services.job_queue import (
    TASK_PROCESS_ONBOARDING_WEBHOOK,
    TASK_PROCESS_STRIPE_WEBHOOK,
    add_job,
)
from src.services.stripe_client import run_sync
from src.services.webhook_store import create_webhook_event, find_by_provider_event_id

logger = logging.getLogger(__name__)


class SignatureVerificationError(Exception):
    """Webhook signature missing, invalid, or the signed body is not a Stripe event."""
    pass


class WebhookSecretMissingError(Exception):
    """No signing secret configured for this webhook source."""
    pass


class UnknownWebhookSourceError(ValueError):
    pass


@dataclass(frozen=True)
class WebhookSource:
    name: str
    secret_setting: str
    task_identifier: str


WEBHOOK_SOURCES = {
    "stripe": WebhookSource("stripe", "stripe_webhook_secret", TASK_PROCESS_STRIPE_WEBHOOK),
    "stripe-connect": WebhookSource(
        "stripe-connect", "stripe_connect_webhook_secret", TASK_PROCESS_ONBOARDING_WEBHOOK,
    ),
}


@dataclass(frozen=True)
class StoredWebhook:
    event: dict
    webhook_id: str
    already_processed: bool = False
    is_new: bool = False
    retries_exhausted: bool = False

    @property
    def event_id(self) -> str:
        return self.event["id"]

    @property
    def event_type(self) -> str:
        return self.event["type"]


def get_webhook_source(source: str) -> WebhookSource:
    config = WEBHOOK_SOURCES.get(source)
    if config is None:
        raise UnknownWebhookSourceError(f"Unknown webhook source: {source}")
    return config


async def _verify_signature(raw_body: bytes, signature: str, secret: str) -> dict:
    import stripe

    if not signature:
        raise SignatureVerificationError("Missing signature header")
    try:
        await run_sync(stripe.Webhook.construct_event, raw_body, signature, secret)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationError(str(e)) from e
    except ValueError as e:
        raise SignatureVerificationError(f"Invalid payload: {e}") from e

    # Keep the plain JSON the provider signed; stored and replayed as-is
    event = json.loads(raw_body)
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise SignatureVerificationError("Signed payload is not a Stripe event")
    return event


async def verify_and_store_with_secret(
    raw_body: bytes,
    signature: str,
    secret: str,
    *,
    source: str = "stripe",
    headers: Optional[dict] = None,
    url: Optional[str] = None,
) -> StoredWebhook:
    event = await _verify_signature(raw_body, signature, secret)
    event_id = event["id"]
    event_type = event["type"]

    async with async_session_factory() as db:
        existing = await find_by_provider_event_id(db, event_id)
        if existing is not None:
            return _stored_from_existing(event, existing)

        try:
            webhook = await create_webhook_event(
                db,
                provider_event_id=event_id,
                source=source,
                event_type=event_type,
                payload=event,
                headers=headers,
                url=url,
                max_retries=get_settings().webhook_max_retries,
            )
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await db.rollback()
            existing = await find_by_provider_event_id(db, event_id)
            if existing is None:
                raise
            return _stored_from_existing(event, existing)

    logger.info(
        "Webhook stored: source=%s type=%s event=%s id=%s",
        source, event_type, event_id, str(webhook.id)[:8],
    )
    return StoredWebhook(event=event, webhook_id=str(webhook.id), is_new=True)


def _stored_from_existing(event: dict, existing) -> StoredWebhook:
    exhausted = (existing.retry_count or 0) >= (existing.max_retries or 0)
    if existing.processed:
        logger.info(
            "Duplicate webhook (already processed): type=%s event=%s",
            existing.event_type, existing.provider_event_id,
        )
    else:
        logger.info(
            "Duplicate webhook (pending): type=%s event=%s retries=%d",
            existing.event_type, existing.provider_event_id, existing.retry_count or 0,
        )
    return StoredWebhook(
        event=event,
        webhook_id=str(existing.id),
        already_processed=bool(existing.processed),
        is_new=False,
        retries_exhausted=exhausted and not existing.processed,
    )


async def verify_and_store(
    source: str,
    raw_body: bytes,
    signature: str,
    headers: Optional[dict] = None,
    url: Optional[str] = None,
) -> StoredWebhook:
    """
    Verify a delivery with the source's signing secret and store it.

    Raises:
        UnknownWebhookSourceError: source is not configured
        WebhookSecretMissingError: source has no signing secret
        SignatureVerificationError: signature or payload rejected (nothing stored)
    """
    config = get_webhook_source(source)
    secret = getattr(get_settings(), config.secret_setting, "")
    if not secret:
        logger.error("Webhook secret not configured for source %s", source)
        raise WebhookSecretMissingError(f"{config.secret_setting} is not configured")

    return await verify_and_store_with_secret(
        raw_body, signature, secret, source=source, headers=headers, url=url,
    )


async def enqueue_webhook(source: str, stored: StoredWebhook) -> str:
    """Queue processing of a stored webhook. Job key = provider event id."""
    config = get_webhook_source(source)
    return await add_job(
        config.task_identifier,
        {
            "webhook_id": stored.webhook_id,
            "event_id": stored.event_id,
            "event_type": stored.event_type,
        },
        job_key=stored.event_id,
        max_attempts=get_settings().webhook_max_retries,
    )
