"""
Client intake payment processor - applies payment_intent.* and charge.succeeded webhooks.

Status moves pending -> succeeded | failed | canceled. succeeded is terminal:
a late payment_failed or canceled for an intake that already succeeded is
ignored, and replaying payment_intent.succeeded is a no-op. A failed or
canceled intake can still succeed (the client retried with the same link).
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.client_intake import ClientIntake
from src.schemas.events import EventType, WEBHOOK_ACTOR_UUID
from src.services.event_publisher import publish_event_tx
from src.services.stripe_client import get_stripe, run_sync

logger = logging.getLogger(__name__)

_STATUS_FOR_EVENT = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}

_EVENT_FOR_STATUS = {
    "succeeded": EventType.INTAKE_PAYMENT_SUCCEEDED,
    "failed": EventType.INTAKE_PAYMENT_FAILED,
    "canceled": EventType.INTAKE_PAYMENT_CANCELED,
}


def _ref_id(value) -> Optional[str]:
    """Stripe expandable field -> id (string, expanded object, or None)."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


async def find_intake_for_payment_intent(db: AsyncSession, payment_intent: dict) -> Optional[ClientIntake]:
    """Lookup order: payment intent id, payment link id, then metadata.intake_uuid."""
    result = await db.execute(
        select(ClientIntake).where(ClientIntake.stripe_payment_intent_id == payment_intent.get("id"))
    )
    intake = result.scalars().first()
    if intake is not None:
        return intake

    link_id = _ref_id(payment_intent.get("payment_link"))
    if link_id:
        result = await db.execute(
            select(ClientIntake).where(ClientIntake.stripe_payment_link_id == link_id)
        )
        intake = result.scalar_one_or_none()
        if intake is not None:
            return intake

    intake_uuid = (payment_intent.get("metadata") or {}).get("intake_uuid")
    if isinstance(intake_uuid, str):
        try:
            return await db.get(ClientIntake, uuid.UUID(intake_uuid))
        except ValueError:
            logger.warning("Invalid intake_uuid in payment intent metadata: %s", intake_uuid)
    return None


async def process_payment_event(event: dict) -> dict:
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "charge.succeeded":
        payment_intent_id = obj.get("payment_intent")
        if not isinstance(payment_intent_id, str):
            logger.info("Charge %s has no payment intent, skipping", obj.get("id"))
            return {"status": "skipped", "reason": "charge without payment intent"}
        stripe = get_stripe()
        payment_intent = await run_sync(stripe.PaymentIntent.retrieve, payment_intent_id)
        if hasattr(payment_intent, "to_dict"):
            payment_intent = payment_intent.to_dict()
        return await apply_payment_intent(payment_intent, "succeeded", event_id=event.get("id"))

    status = _STATUS_FOR_EVENT.get(event_type)
    if status is None:
        logger.info("Unhandled payment webhook type: %s", event_type)
        return {"status": "ignored", "reason": f"unhandled type {event_type}"}

    return await apply_payment_intent(obj, status, event_id=event.get("id"))


async def apply_payment_intent(payment_intent: dict, status: str, event_id: Optional[str] = None) -> dict:
    """Move the matching intake to status and publish its event in one transaction."""
    pi_id = payment_intent.get("id")

    async with async_session_factory() as db:
        intake = await find_intake_for_payment_intent(db, payment_intent)
        if intake is None:
            logger.info("Payment intent %s not associated with a client intake", pi_id)
            return {"status": "skipped", "reason": "no intake"}

        if intake.status == status and intake.stripe_payment_intent_id == pi_id:
            return {"status": "unchanged", "intake_id": str(intake.id)}
        if intake.status == "succeeded":
            logger.info(
                "Ignoring %s for intake %s: already succeeded",
                status, str(intake.id)[:8],
            )
            return {"status": "unchanged", "intake_id": str(intake.id)}

        now = datetime.now(timezone.utc)
        intake.status = status
        intake.stripe_payment_intent_id = pi_id
        charge_id = _ref_id(payment_intent.get("latest_charge"))
        if charge_id:
            intake.stripe_charge_id = charge_id
        if status == "succeeded":
            intake.succeeded_at = now

        meta = intake.intake_metadata or {}
        payload = {
            "event_id": event_id,
            "stripe_payment_intent_id": pi_id,
            "intake_payment_id": str(intake.id),
            "amount": intake.amount,
            "currency": intake.currency,
            "client_email": meta.get("email"),
            "client_name": meta.get("name"),
            f"{status}_at": now.isoformat(),
        }
        if status == "succeeded":
            payload["stripe_charge_id"] = intake.stripe_charge_id
        elif status == "failed":
            payload["failure_reason"] = (payment_intent.get("last_payment_error") or {}).get("message")
        else:
            payload["cancellation_reason"] = payment_intent.get("cancellation_reason")

        await publish_event_tx(
            db,
            _EVENT_FOR_STATUS[status],
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            organization_id=intake.organization_id,
            payload=payload,
        )
        await db.commit()

    logger.info("Client intake %s -> %s (payment intent %s)", str(intake.id)[:8], status, pi_id)
    return {"status": status, "intake_id": str(intake.id)}
