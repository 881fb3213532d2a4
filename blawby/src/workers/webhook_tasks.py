"""
Webhook dispatch tasks - process-stripe-webhook and process-onboarding-webhook.

Each job references a stored webhook_events row. The task loads it, routes
it by event type to one domain processor, and records the outcome on the row.
A processor failure is recorded (error, stack, retry_count + 1) together with a
webhook.failed outbox event, and re-raised as ProcessorError so the job is
retried with backoff.

Routing by event type:
- product.* / price.*            -> subscription catalog
- customer.subscription.*        -> acknowledged (billing integration owns these)
- account.* / capability.*       -> onboarding (includes account.external_account.*)
- payment_intent.* / charge.succeeded -> client intake payments
- anything else                  -> acknowledged and logged, marked processed
"""
import logging
from enum import Enum

from src.database import async_session_factory
from src.services.webhook_store import get_webhook, mark_webhook_failed, mark_webhook_processed

logger = logging.getLogger(__name__)


class WebhookRoute(str, Enum):
    SUBSCRIPTIONS = "subscriptions"
    HANDLED_UPSTREAM = "handled_upstream"
    ONBOARDING = "onboarding"
    PAYMENTS = "payments"
    UNHANDLED = "unhandled"


# Routes whose processors publish outbox events
_PUBLISHING_ROUTES = (WebhookRoute.SUBSCRIPTIONS, WebhookRoute.ONBOARDING, WebhookRoute.PAYMENTS)


class ProcessorError(Exception):
    """A domain processor failed while applying a webhook."""

    def __init__(self, webhook_id: str, event_type: str, cause: Exception):
        super().__init__(f"Processing {event_type} webhook {webhook_id} failed: {cause}")
        self.webhook_id = webhook_id
        self.event_type = event_type
        self.cause = cause


def classify_webhook(event_type: str) -> WebhookRoute:
    if event_type.startswith("product.") or event_type.startswith("price."):
        return WebhookRoute.SUBSCRIPTIONS
    if event_type.startswith("customer.subscription."):
        return WebhookRoute.HANDLED_UPSTREAM
    if event_type.startswith("account.") or event_type.startswith("capability."):
        return WebhookRoute.ONBOARDING
    if event_type.startswith("payment_intent.") or event_type == "charge.succeeded":
        return WebhookRoute.PAYMENTS
    return WebhookRoute.UNHANDLED


async def _run_processor(route: WebhookRoute, event: dict) -> dict:
    if route == WebhookRoute.SUBSCRIPTIONS:
        from src.services.subscription_webhooks import process_subscription_event
        return await process_subscription_event(event)
    if route == WebhookRoute.ONBOARDING:
        from src.services.onboarding_webhooks import process_onboarding_event
        return await process_onboarding_event(event)
    if route == WebhookRoute.PAYMENTS:
        from src.services.intake_payments import process_payment_event
        return await process_payment_event(event)
    if route == WebhookRoute.HANDLED_UPSTREAM:
        return {"status": "acknowledged", "reason": "handled by billing integration"}
    return {"status": "acknowledged", "reason": "unhandled event type"}


async def _record_failure(webhook_id, error: Exception) -> None:
    """Mark the row failed and publish WEBHOOK_FAILED in the same transaction."""
    from src.schemas.events import EventType
    from src.services.event_publisher import publish_event_tx, request_outbox_drain

    async with async_session_factory() as db:
        webhook = await get_webhook(db, webhook_id)
        if webhook is None:
            return
        await mark_webhook_failed(db, webhook, error)
        await publish_event_tx(
            db,
            EventType.WEBHOOK_FAILED,
            actor_id="webhook",
            actor_type="webhook",
            payload={
                "webhook_id": str(webhook.id),
                "provider_event_id": webhook.provider_event_id,
                "event_type": webhook.event_type,
                "source": webhook.source,
                "retry_count": webhook.retry_count,
                "max_retries": webhook.max_retries,
                "retries_exhausted": webhook.retry_count >= webhook.max_retries,
                "error": (webhook.error or "")[:500],
            },
        )
        await db.commit()

    await request_outbox_drain()


async def _process_webhook(payload: dict, ctx, task_name: str) -> dict:
    webhook_id = payload.get("webhook_id")

    async with async_session_factory() as db:
        webhook = await get_webhook(db, webhook_id) if webhook_id else None
        if webhook is None:
            logger.error("%s: webhook %s not found", task_name, webhook_id)
            return {"status": "skipped", "reason": "webhook not found"}
        if webhook.processed:
            logger.info("%s: webhook %s already processed", task_name, str(webhook.id)[:8])
            return {"status": "skipped", "reason": "already processed"}
        event = webhook.payload or {}
        event_type = webhook.event_type

    route = classify_webhook(event_type)
    if route == WebhookRoute.UNHANDLED:
        logger.info(
            "Unhandled webhook type acknowledged: type=%s event=%s",
            event_type, payload.get("event_id"),
        )

    try:
        result = await _run_processor(route, event)
    except Exception as e:
        await _record_failure(webhook_id, e)
        raise ProcessorError(str(webhook_id), event_type, e) from e

    async with async_session_factory() as db:
        webhook = await get_webhook(db, webhook_id)
        if webhook is not None:
            await mark_webhook_processed(db, webhook)
            await db.commit()

    logger.info(
        "Webhook processed: task=%s type=%s route=%s webhook=%s",
        task_name, event_type, route.value, str(webhook_id)[:8],
    )

    if route in _PUBLISHING_ROUTES:
        from src.services.event_publisher import request_outbox_drain
        await request_outbox_drain()

    return {"status": "processed", "route": route.value, "result": result}


async def process_stripe_webhook(payload: dict, ctx) -> dict:
    """Platform account webhooks (subscription catalog, payments)."""
    return await _process_webhook(payload, ctx, "process-stripe-webhook")


async def process_onboarding_webhook(payload: dict, ctx) -> dict:
    """Connect webhooks (connected account state, intake payments on connected accounts)."""
    return await _process_webhook(payload, ctx, "process-onboarding-webhook")
