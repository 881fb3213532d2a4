"""
Practice details - create or update a practice profile and record the change
in the outbox within the caller's transaction. The caller commits.
"""
import logging
import uuid
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.practice_details import PracticeDetails
from src.schemas.events import EventType
from src.services.event_publisher import publish_event_tx

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "business_phone",
    "business_email",
    "website",
    "consultation_fee",
    "payment_url",
    "calendly_url",
    "intro_message",
    "overview",
    "is_public",
    "services",
)


def _as_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def get_practice_details(db: AsyncSession, organization_id) -> Optional[PracticeDetails]:
    result = await db.execute(
        select(PracticeDetails).where(PracticeDetails.organization_id == _as_uuid(organization_id))
    )
    return result.scalar_one_or_none()


async def upsert_practice_details(
    db: AsyncSession,
    organization_id,
    user_id,
    data: dict,
) -> PracticeDetails:
    """
    Apply data to the organization's practice details and stage
    PRACTICE_DETAILS_CREATED or PRACTICE_DETAILS_UPDATED in the same transaction.
    Unknown keys in data are ignored.
    """
    org_uuid = _as_uuid(organization_id)
    user_uuid = _as_uuid(user_id)
    changes = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}

    details = await get_practice_details(db, org_uuid)
    created = details is None
    if created:
        details = PracticeDetails(organization_id=org_uuid, user_id=user_uuid)
        db.add(details)

    for key, value in changes.items():
        setattr(details, key, value)
    await db.flush()

    await publish_event_tx(
        db,
        EventType.PRACTICE_DETAILS_CREATED if created else EventType.PRACTICE_DETAILS_UPDATED,
        actor_id=user_uuid,
        actor_type="user",
        organization_id=org_uuid,
        payload={
            "organization_id": str(org_uuid),
            "practice_details_id": str(details.id),
            "changed_fields": sorted(changes),
        },
    )

    logger.info(
        "Practice details %s: org=%s fields=%s",
        "created" if created else "updated", str(org_uuid)[:8], ",".join(sorted(changes)),
    )
    return details
