"""
Onboarding webhook processor - applies Stripe Connect account webhooks.

Every handler re-derives the stored state from the event payload
(full snapshot for account.updated, replace-by-id for capabilities and
external accounts) and writes its domain event in the same transaction.
Applying an event twice, or a stale snapshot after a newer one, leaves the
account unchanged.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.connected_account import ConnectedAccount
from src.schemas.events import EventType, WEBHOOK_ACTOR_UUID
from src.services.event_publisher import publish_event_tx
from src.utils import stripe_normalizers as normalizers

logger = logging.getLogger(__name__)

EXTERNAL_ACCOUNT_EVENTS = (
    "account.external_account.created",
    "account.external_account.updated",
    "account.external_account.deleted",
)


async def _get_account(db: AsyncSession, stripe_account_id: str) -> Optional[ConnectedAccount]:
    result = await db.execute(
        select(ConnectedAccount).where(ConnectedAccount.stripe_account_id == stripe_account_id)
    )
    return result.scalar_one_or_none()


def _event_object(event: dict) -> dict:
    return (event.get("data") or {}).get("object") or {}


def _owner_account_id(event: dict, obj: dict) -> Optional[str]:
    owner = obj.get("account")
    if isinstance(owner, str) and owner:
        return owner
    owner = event.get("account")
    return owner if isinstance(owner, str) and owner else None


async def process_onboarding_event(event: dict) -> dict:
    """Route one Connect account webhook to its handler."""
    event_type = event.get("type", "")

    if event_type == "account.updated":
        return await handle_account_updated(event)
    if event_type == "capability.updated":
        return await handle_capability_updated(event)
    if event_type in EXTERNAL_ACCOUNT_EVENTS:
        return await handle_external_account_event(event)

    logger.info("Unhandled onboarding webhook type: %s", event_type)
    return {"status": "ignored", "reason": f"unhandled type {event_type}"}


async def handle_account_updated(event: dict) -> dict:
    account = _event_object(event)
    stripe_account_id = account.get("id")
    event_created = event.get("created")

    async with async_session_factory() as db:
        record = await _get_account(db, stripe_account_id)
        if record is None:
            logger.warning("Connected account not found for %s", stripe_account_id)
            return {"status": "skipped", "reason": "account not found"}

        if (
            event_created is not None
            and record.last_event_created is not None
            and event_created < record.last_event_created
        ):
            logger.info(
                "Stale account snapshot ignored: account=%s event_created=%s last_applied=%s",
                stripe_account_id, event_created, record.last_event_created,
            )
            return {"status": "skipped", "reason": "stale event"}

        was_active = record.is_active
        previous_due = list((record.requirements or {}).get("currently_due") or [])

        record.charges_enabled = bool(account.get("charges_enabled"))
        record.payouts_enabled = bool(account.get("payouts_enabled"))
        record.details_submitted = bool(account.get("details_submitted"))
        record.business_type = account.get("business_type")
        record.company = normalizers.normalize_company(account.get("company"))
        record.individual = normalizers.normalize_individual(account.get("individual"))
        record.requirements = normalizers.normalize_requirements(account.get("requirements"))
        record.capabilities = normalizers.normalize_capabilities(account.get("capabilities"))
        record.external_accounts = normalizers.normalize_external_accounts(account.get("external_accounts"))
        record.future_requirements = normalizers.normalize_future_requirements(account.get("future_requirements"))
        record.tos_acceptance = normalizers.normalize_tos_acceptance(account.get("tos_acceptance"))
        record.account_metadata = account.get("metadata") or None
        if account.get("email"):
            record.email = account["email"]
        record.last_refreshed_at = datetime.now(timezone.utc)
        if event_created is not None:
            record.last_event_created = event_created

        now_iso = datetime.now(timezone.utc).isoformat()
        await publish_event_tx(
            db,
            EventType.ONBOARDING_ACCOUNT_UPDATED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            organization_id=record.organization_id,
            payload={
                "stripe_account_id": stripe_account_id,
                "organization_id": str(record.organization_id),
                "charges_enabled": record.charges_enabled,
                "payouts_enabled": record.payouts_enabled,
                "details_submitted": record.details_submitted,
                "business_type": record.business_type,
                "updated_at": now_iso,
            },
        )

        current_due = list((record.requirements or {}).get("currently_due") or [])
        if sorted(current_due) != sorted(previous_due):
            await publish_event_tx(
                db,
                EventType.ONBOARDING_ACCOUNT_REQUIREMENTS_CHANGED,
                actor_id=WEBHOOK_ACTOR_UUID,
                actor_type="webhook",
                organization_id=record.organization_id,
                payload={
                    "stripe_account_id": stripe_account_id,
                    "previously_due": previous_due,
                    "currently_due": current_due,
                    "disabled_reason": (record.requirements or {}).get("disabled_reason"),
                },
            )

        completed = record.is_active and not was_active
        if completed:
            record.onboarding_completed_at = record.onboarding_completed_at or datetime.now(timezone.utc)
            await publish_event_tx(
                db,
                EventType.ONBOARDING_COMPLETED,
                actor_id=WEBHOOK_ACTOR_UUID,
                actor_type="webhook",
                organization_id=record.organization_id,
                payload={
                    "stripe_account_id": stripe_account_id,
                    "organization_id": str(record.organization_id),
                    "completed_at": now_iso,
                },
            )

        await db.commit()

    logger.info(
        "Connected account updated: account=%s active=%s completed=%s",
        stripe_account_id, record.is_active, completed,
    )
    return {"status": "updated", "stripe_account_id": stripe_account_id, "onboarding_completed": completed}


async def handle_capability_updated(event: dict) -> dict:
    capability = _event_object(event)
    capability_id = capability.get("id")
    stripe_account_id = _owner_account_id(event, capability)
    if not stripe_account_id:
        logger.warning("Missing Stripe account id for capability %s", capability_id)
        return {"status": "skipped", "reason": "missing account id"}

    async with async_session_factory() as db:
        record = await _get_account(db, stripe_account_id)
        if record is None:
            logger.warning("Connected account not found for capability update: %s", stripe_account_id)
            return {"status": "skipped", "reason": "account not found"}

        # Reassign so the JSON column is marked dirty
        record.capabilities = {**(record.capabilities or {}), capability_id: capability.get("status")}
        record.last_refreshed_at = datetime.now(timezone.utc)

        await publish_event_tx(
            db,
            EventType.ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED,
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            organization_id=record.organization_id,
            payload={
                "stripe_account_id": stripe_account_id,
                "organization_id": str(record.organization_id),
                "capability_id": capability_id,
                "capability_status": capability.get("status"),
                "requested": capability.get("requested"),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await db.commit()

    logger.info("Capability %s=%s for account %s", capability_id, capability.get("status"), stripe_account_id)
    return {"status": "updated", "capability_id": capability_id}


def _current_external_accounts(value) -> list[dict]:
    if normalizers.is_external_account_list(value):
        return [a for a in value["data"] if normalizers.is_record(a)]
    return []


async def handle_external_account_event(event: dict) -> dict:
    """Created/updated replace the entry with the same id; deleted removes it."""
    event_type = event.get("type", "")
    external = _event_object(event)
    external_id = external.get("id")
    stripe_account_id = _owner_account_id(event, external)
    if not stripe_account_id:
        logger.warning("Missing Stripe account id for external account %s", external_id)
        return {"status": "skipped", "reason": "missing account id"}

    action = event_type.rsplit(".", 1)[-1]
    account_kind = external.get("object") if external.get("object") in ("bank_account", "card") else "unknown"

    async with async_session_factory() as db:
        record = await _get_account(db, stripe_account_id)
        if record is None:
            logger.warning("Connected account not found for external account %s: %s", action, stripe_account_id)
            return {"status": "skipped", "reason": "account not found"}

        remaining = [a for a in _current_external_accounts(record.external_accounts) if a.get("id") != external_id]
        if action != "deleted":
            remaining.append(normalizers.normalize_external_account(external))
        record.external_accounts = {"object": "list", "data": remaining}
        record.last_refreshed_at = datetime.now(timezone.utc)

        event_types = {
            "created": EventType.ONBOARDING_EXTERNAL_ACCOUNT_CREATED,
            "updated": EventType.ONBOARDING_EXTERNAL_ACCOUNT_UPDATED,
            "deleted": EventType.ONBOARDING_EXTERNAL_ACCOUNT_DELETED,
        }
        await publish_event_tx(
            db,
            event_types[action],
            actor_id=WEBHOOK_ACTOR_UUID,
            actor_type="webhook",
            organization_id=record.organization_id,
            payload={
                "stripe_account_id": stripe_account_id,
                "organization_id": str(record.organization_id),
                "external_account_id": external_id,
                "external_account_type": account_kind,
                f"{action}_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await db.commit()

    logger.info("External account %s %s for account %s", external_id, action, stripe_account_id)
    return {"status": action, "external_account_id": external_id}
