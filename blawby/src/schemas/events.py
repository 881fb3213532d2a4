"""
Canonical domain event envelope and event type catalog.
Every outbox row converts to a BaseEvent before fan-out to handlers.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field

# Fixed actor ids for events not triggered by a user
SYSTEM_ACTOR_UUID = uuid.UUID("00000000-0000-0000-0000-000000000000")
WEBHOOK_ACTOR_UUID = uuid.UUID("00000000-0000-0000-0000-000000000001")
CRON_ACTOR_UUID = uuid.UUID("00000000-0000-0000-0000-000000000002")
API_ACTOR_UUID = uuid.UUID("00000000-0000-0000-0000-000000000003")
ORGANIZATION_ACTOR_UUID = uuid.UUID("00000000-0000-0000-0000-000000000004")

ActorType = Literal["user", "system", "webhook", "cron", "api"]

DEFAULT_EVENT_VERSION = "1.0.0"


class EventType(str, Enum):
    # Onboarding (Stripe Connect)
    ONBOARDING_COMPLETED = "onboarding.completed"
    ONBOARDING_ACCOUNT_UPDATED = "onboarding.account.updated"
    ONBOARDING_ACCOUNT_REQUIREMENTS_CHANGED = "onboarding.account.requirements_changed"
    ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED = "onboarding.account.capabilities_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_CREATED = "onboarding.external_account.created"
    ONBOARDING_EXTERNAL_ACCOUNT_UPDATED = "onboarding.external_account.updated"
    ONBOARDING_EXTERNAL_ACCOUNT_DELETED = "onboarding.external_account.deleted"

    # Webhook processing failures
    WEBHOOK_FAILED = "webhook.failed"

    # Client intake payments
    INTAKE_PAYMENT_SUCCEEDED = "intake_payment.succeeded"
    INTAKE_PAYMENT_FAILED = "intake_payment.failed"
    INTAKE_PAYMENT_CANCELED = "intake_payment.canceled"

    # Practice
    PRACTICE_UPDATED = "practice.updated"
    PRACTICE_DETAILS_CREATED = "practice.details.created"
    PRACTICE_DETAILS_UPDATED = "practice.details.updated"

    # Subscription plan catalog
    SUBSCRIPTION_PRODUCT_SYNCED = "subscription.product.synced"
    SUBSCRIPTION_PRODUCT_DELETED = "subscription.product.deleted"
    SUBSCRIPTION_PRICE_SYNCED = "subscription.price.synced"
    SUBSCRIPTION_PRICE_DELETED = "subscription.price.deleted"


class EventMetadata(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    source: str = "system"
    environment: str = "development"


class BaseEvent(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    type: str
    event_version: str = DEFAULT_EVENT_VERSION
    timestamp: datetime
    actor_id: uuid.UUID
    actor_type: ActorType
    organization_id: Optional[uuid.UUID] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    processed: bool = False
    retry_count: int = 0

    @classmethod
    def from_record(cls, record) -> "BaseEvent":
        """Build the envelope from a DomainEvent row."""
        return cls(
            event_id=record.event_id,
            type=record.event_type,
            event_version=record.event_version or DEFAULT_EVENT_VERSION,
            timestamp=record.created_at,
            actor_id=record.actor_id,
            actor_type=record.actor_type,
            organization_id=record.organization_id,
            payload=record.payload or {},
            metadata=EventMetadata(**(record.event_metadata or {})),
            processed=bool(record.processed),
            retry_count=record.retry_count or 0,
        )
