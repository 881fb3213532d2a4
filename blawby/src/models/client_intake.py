"""
Client intake payments - a prospective client's consultation fee paid to a practice
through a Stripe payment link on the practice's connected account.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

INTAKE_STATUSES = ("pending", "succeeded", "failed", "canceled")


class ClientIntake(Base):
    __tablename__ = "practice_client_intakes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    connected_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    stripe_payment_link_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255))
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255))

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # Minor units (cents)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    status: Mapped[str] = mapped_column(String(20), default="pending")

    intake_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512))

    succeeded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_client_intakes_organization_id", "organization_id"),
        Index("ix_client_intakes_payment_intent", "stripe_payment_intent_id"),
    )

    def __repr__(self) -> str:
        return f"<ClientIntake {self.amount} {self.currency} ({self.status})>"
