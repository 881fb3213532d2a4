"""
Stripe Connect account state per organization.
Written only from full account snapshots (account.updated) or targeted
sub-object replacements, so re-applying any webhook is safe.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class ConnectedAccount(Base):
    __tablename__ = "stripe_connected_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    account_type: Mapped[str] = mapped_column(String(20), default="custom")
    country: Mapped[str] = mapped_column(String(2), default="US")
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, default=False)

    business_type: Mapped[Optional[str]] = mapped_column(String(50))
    company: Mapped[Optional[dict]] = mapped_column(JSONB)
    individual: Mapped[Optional[dict]] = mapped_column(JSONB)
    requirements: Mapped[Optional[dict]] = mapped_column(JSONB)
    capabilities: Mapped[Optional[dict]] = mapped_column(JSONB)
    external_accounts: Mapped[Optional[dict]] = mapped_column(JSONB)
    future_requirements: Mapped[Optional[dict]] = mapped_column(JSONB)
    tos_acceptance: Mapped[Optional[dict]] = mapped_column(JSONB)
    account_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)

    onboarding_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Stripe event.created (unix seconds) of the last applied account snapshot
    last_event_created: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_connected_accounts_organization_id", "organization_id"),
    )

    @property
    def is_active(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled and self.details_submitted)

    def __repr__(self) -> str:
        return f"<ConnectedAccount {self.stripe_account_id} active={self.is_active}>"
