"""
Webhook event store - every verified provider delivery is recorded before processing.
One row per provider event id. Rows are never deleted; they are the audit trail
and the source the dispatch workers load payloads from.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from src.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider_event_id = Column(String(255), nullable=False, unique=True)  # Stripe evt_...
    source = Column(String(50), nullable=False, index=True)  # stripe, stripe-connect
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONB, nullable=False)
    headers = Column(JSONB, nullable=True)
    url = Column(Text, nullable=True)

    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_retries = Column(Integer, nullable=False, default=5, server_default="5")

    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    correlation_id = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        Index("ix_webhook_events_pending", "processed", "retry_count", "received_at"),
    )

    def __repr__(self) -> str:
        state = "processed" if self.processed else "pending"
        return f"<WebhookEvent {self.event_type} {self.provider_event_id} ({state})>"
