"""
Application event subscribers and registry construction.

build_event_registry() is called once per process (API lifespan, worker
startup) and returns a frozen EventHandlerRegistry that is passed to the
workers explicitly.
"""
import logging
from typing import Optional

from src.schemas.events import BaseEvent, EventType, SYSTEM_ACTOR_UUID
from src.services.event_registry import EventHandlerRegistry

logger = logging.getLogger(__name__)

ONBOARDING_AUDIT_TYPES = (
    EventType.ONBOARDING_ACCOUNT_UPDATED,
    EventType.ONBOARDING_ACCOUNT_REQUIREMENTS_CHANGED,
    EventType.ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED,
    EventType.ONBOARDING_EXTERNAL_ACCOUNT_CREATED,
    EventType.ONBOARDING_EXTERNAL_ACCOUNT_UPDATED,
    EventType.ONBOARDING_EXTERNAL_ACCOUNT_DELETED,
)


async def log_onboarding_event(event: BaseEvent) -> None:
    logger.info(
        "Onboarding event %s: account=%s",
        event.type, event.payload.get("stripe_account_id"),
        extra={
            "event_id": str(event.event_id),
            "organization_id": str(event.organization_id) if event.organization_id else None,
        },
    )


async def announce_onboarding_completed(event: BaseEvent) -> None:
    """Publish PRACTICE_UPDATED so practice-facing consumers see the account went live."""
    from src.services.event_publisher import publish_system_event

    if not event.organization_id:
        logger.error("Onboarding completed event %s has no organization", str(event.event_id)[:8])
        return

    # Runs after the onboarding transaction committed, so there is nothing to join
    await publish_system_event(
        EventType.PRACTICE_UPDATED,
        payload={
            "organization_id": str(event.organization_id),
            "payments_enabled": True,
            "stripe_account_id": event.payload.get("stripe_account_id"),
            "source_event_id": str(event.event_id),
        },
        actor_id=SYSTEM_ACTOR_UUID,
        actor_type="system",
        organization_id=event.organization_id,
    )


async def notify_intake_payment_received(event: BaseEvent) -> Optional[dict]:
    """Queued: resolve who at the practice should hear about a paid consultation."""
    from src.database import async_session_factory
    from src.services.practice_details import get_practice_details

    if not event.organization_id:
        return None

    async with async_session_factory() as db:
        details = await get_practice_details(db, event.organization_id)

    recipient = details.business_email if details else None
    if not recipient:
        logger.warning(
            "No business email for intake payment notification: org=%s",
            str(event.organization_id)[:8],
        )
        return None

    logger.info(
        "Intake payment notification: org=%s intake=%s amount=%s %s recipient=%s",
        str(event.organization_id)[:8],
        str(event.payload.get("intake_payment_id", ""))[:8],
        event.payload.get("amount"), event.payload.get("currency"), recipient,
    )
    return {"recipient": recipient, "intake_payment_id": event.payload.get("intake_payment_id")}


async def log_intake_payment_problem(event: BaseEvent) -> None:
    logger.warning(
        "Intake payment %s: intake=%s reason=%s",
        event.type,
        str(event.payload.get("intake_payment_id", ""))[:8],
        event.payload.get("failure_reason") or event.payload.get("cancellation_reason"),
    )


async def log_webhook_failure(event: BaseEvent) -> None:
    """Retries still left log a warning; an exhausted webhook logs an error for replay."""
    payload = event.payload
    message = "Webhook processing failed: type=%s event=%s retry=%s/%s error=%s"
    args = (
        payload.get("event_type"), payload.get("provider_event_id"),
        payload.get("retry_count"), payload.get("max_retries"), payload.get("error"),
    )
    extra = {"event_id": payload.get("provider_event_id"), "webhook_id": payload.get("webhook_id")}
    if payload.get("retries_exhausted"):
        logger.error(message + " (retries exhausted, replay with scripts/requeue_webhook.py)", *args, extra=extra)
    else:
        logger.warning(message, *args, extra=extra)


def register_event_handlers(registry: EventHandlerRegistry) -> EventHandlerRegistry:
    for event_type in ONBOARDING_AUDIT_TYPES:
        registry.subscribe(event_type, log_onboarding_event, name="onboarding-audit-log")

    registry.subscribe(
        EventType.ONBOARDING_COMPLETED,
        announce_onboarding_completed,
        name="announce-onboarding-completed",
        priority=10,
    )
    registry.subscribe(
        EventType.INTAKE_PAYMENT_SUCCEEDED,
        notify_intake_payment_received,
        name="notify-intake-payment",
        should_queue=True,
    )
    for event_type in (EventType.INTAKE_PAYMENT_FAILED, EventType.INTAKE_PAYMENT_CANCELED):
        registry.subscribe(event_type, log_intake_payment_problem, name="intake-payment-problem-log")
    registry.subscribe(EventType.WEBHOOK_FAILED, log_webhook_failure, name="webhook-failure-log")

    return registry


def build_event_registry() -> EventHandlerRegistry:
    registry = register_event_handlers(EventHandlerRegistry()).freeze()
    logger.info("Event handlers registered for %d event types", len(registry.event_types()))
    return registry
