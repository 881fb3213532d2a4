"""
Tests for src/services/practice_details.py - the practice profile write and its
outbox event share one transaction.
"""
import uuid

from sqlalchemy import select, func

from src.models.domain_event import DomainEvent
from src.models.practice_details import PracticeDetails
from src.services.practice_details import get_practice_details, upsert_practice_details

ORG_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
USER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return int(result.scalar() or 0)


class TestUpsertPracticeDetails:
    async def test_create_writes_details_and_event(self, db):
        details = await upsert_practice_details(
            db, ORG_ID, USER_ID,
            {"business_email": "intake@firm.example", "consultation_fee": 15000},
        )
        await db.commit()

        assert details.business_email == "intake@firm.example"
        events = (await db.execute(select(DomainEvent))).scalars().all()
        assert len(events) == 1
        assert events[0].event_type == "practice.details.created"
        assert events[0].actor_type == "user"
        assert events[0].actor_id == USER_ID
        assert events[0].payload["changed_fields"] == ["business_email", "consultation_fee"]

    async def test_second_write_publishes_updated(self, db):
        await upsert_practice_details(db, ORG_ID, USER_ID, {"website": "https://a.example"})
        await db.commit()
        await upsert_practice_details(db, str(ORG_ID), str(USER_ID), {"website": "https://b.example"})
        await db.commit()

        types = (await db.execute(
            select(DomainEvent.event_type).order_by(DomainEvent.created_at)
        )).scalars().all()
        assert types == ["practice.details.created", "practice.details.updated"]
        assert await _count(db, PracticeDetails) == 1

        details = await get_practice_details(db, ORG_ID)
        assert details.website == "https://b.example"

    async def test_unknown_fields_ignored(self, db):
        details = await upsert_practice_details(
            db, ORG_ID, USER_ID, {"overview": "Family law", "organization_id": "hijack"},
        )
        await db.commit()

        assert details.organization_id == ORG_ID
        assert details.overview == "Family law"

    async def test_rollback_discards_details_and_event(self, db):
        """A failed transaction leaves neither the profile nor its event behind."""
        await upsert_practice_details(db, ORG_ID, USER_ID, {"business_phone": "+15125550100"})
        await db.rollback()

        assert await _count(db, PracticeDetails) == 0
        assert await _count(db, DomainEvent) == 0
        assert await get_practice_details(db, ORG_ID) is None
