"""
Domain event publisher - writes events to the outbox (events table).

Two guarantees, reported back to the caller in PublishResult:

- DURABLE: publish_event_tx() adds the event to the caller's session. It
  commits or rolls back together with the state change it describes.
- BEST_EFFORT: publish_event() / publish_simple_event() / publish_system_event()
  write in their own session after an external call that has no local
  transaction to join. Failures are logged, never raised, and the event is lost.

Written events are drained by the process-outbox-event task.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import async_session_factory
from src.models.domain_event import DomainEvent
from src.schemas.events import (
    API_ACTOR_UUID,
    CRON_ACTOR_UUID,
    DEFAULT_EVENT_VERSION,
    ORGANIZATION_ACTOR_UUID,
    SYSTEM_ACTOR_UUID,
    WEBHOOK_ACTOR_UUID,
    BaseEvent,
    EventMetadata,
    EventType,
)

logger = logging.getLogger(__name__)

_NAMED_ACTORS = {
    "system": SYSTEM_ACTOR_UUID,
    "webhook": WEBHOOK_ACTOR_UUID,
    "cron": CRON_ACTOR_UUID,
    "api": API_ACTOR_UUID,
    "organization": ORGANIZATION_ACTOR_UUID,
}

OUTBOX_DRAIN_JOB_KEY = "outbox-drain"


class PublishGuarantee(str, Enum):
    DURABLE = "durable"
    BEST_EFFORT = "best_effort"


class PublishResult:
    """Outcome of a publish call."""

    __slots__ = ("event", "guarantee", "persisted", "error")

    def __init__(
        self,
        event: BaseEvent,
        guarantee: PublishGuarantee,
        persisted: bool,
        error: Optional[str] = None,
    ):
        self.event = event
        self.guarantee = guarantee
        self.persisted = persisted
        self.error = error

    @property
    def durable(self) -> bool:
        return self.guarantee == PublishGuarantee.DURABLE

    def __repr__(self) -> str:
        return (
            f"<PublishResult {self.event.type} {self.guarantee.value} "
            f"persisted={self.persisted}>"
        )


def resolve_actor_id(actor_id: Union[str, uuid.UUID, None]) -> uuid.UUID:
    """Map a user UUID or a symbolic actor name (system, webhook, ...) to a UUID."""
    if actor_id is None:
        return SYSTEM_ACTOR_UUID
    if isinstance(actor_id, uuid.UUID):
        return actor_id
    try:
        return uuid.UUID(str(actor_id))
    except ValueError:
        pass

    resolved = _NAMED_ACTORS.get(str(actor_id).lower())
    if resolved is None:
        logger.warning("Unknown actor id %r mapped to system actor", actor_id)
        return SYSTEM_ACTOR_UUID
    return resolved


def create_event_metadata(
    source: str,
    headers: Optional[dict] = None,
    ip_address: Optional[str] = None,
    request_id: Optional[str] = None,
) -> EventMetadata:
    headers = {k.lower(): v for k, v in (headers or {}).items()}
    return EventMetadata(
        ip_address=ip_address,
        user_agent=headers.get("user-agent"),
        request_id=request_id or headers.get("x-correlation-id"),
        source=source,
        environment=get_settings().app_env,
    )


def _to_org_uuid(organization_id) -> Optional[uuid.UUID]:
    if organization_id is None or organization_id == "":
        return None
    if isinstance(organization_id, uuid.UUID):
        return organization_id
    return uuid.UUID(str(organization_id))


def build_event(
    event_type: Union[str, EventType],
    *,
    actor_id=None,
    actor_type: str = "system",
    organization_id=None,
    payload: Optional[dict] = None,
    metadata: Optional[EventMetadata] = None,
    version: str = DEFAULT_EVENT_VERSION,
) -> BaseEvent:
    return BaseEvent(
        event_id=uuid.uuid4(),
        type=event_type.value if isinstance(event_type, EventType) else str(event_type),
        event_version=version,
        timestamp=datetime.now(timezone.utc),
        actor_id=resolve_actor_id(actor_id),
        actor_type=actor_type,
        organization_id=_to_org_uuid(organization_id),
        payload=dict(payload or {}),
        metadata=metadata or create_event_metadata("api"),
    )


def _to_record(event: BaseEvent) -> DomainEvent:
    return DomainEvent(
        event_id=event.event_id,
        event_type=event.type,
        event_version=event.event_version,
        actor_id=event.actor_id,
        actor_type=event.actor_type,
        organization_id=event.organization_id,
        payload=event.payload,
        event_metadata=event.metadata.model_dump(mode="json"),
        processed=False,
        retry_count=0,
        created_at=event.timestamp,
    )


async def publish_event_tx(
    db: AsyncSession,
    event_type: Union[str, EventType],
    *,
    actor_id=None,
    actor_type: str = "system",
    organization_id=None,
    payload: Optional[dict] = None,
    metadata: Optional[EventMetadata] = None,
    version: str = DEFAULT_EVENT_VERSION,
) -> PublishResult:
    """
    Write an event inside the caller's transaction (transactional outbox).

    Flushes but never commits: the caller's commit persists the event and
    the state change together, and a rollback discards both.
    """
    event = build_event(
        event_type,
        actor_id=actor_id,
        actor_type=actor_type,
        organization_id=organization_id,
        payload=payload,
        metadata=metadata,
        version=version,
    )
    db.add(_to_record(event))
    await db.flush()

    logger.debug("Event staged in transaction: type=%s id=%s", event.type, str(event.event_id)[:8])
    return PublishResult(event, PublishGuarantee.DURABLE, persisted=True)


async def publish_event(
    event_type: Union[str, EventType],
    *,
    actor_id=None,
    actor_type: str = "system",
    organization_id=None,
    payload: Optional[dict] = None,
    metadata: Optional[EventMetadata] = None,
    version: str = DEFAULT_EVENT_VERSION,
) -> PublishResult:
    """
    Best-effort publish in a dedicated session.
    Use only after an external API call with no local transaction to join.
    """
    event = build_event(
        event_type,
        actor_id=actor_id,
        actor_type=actor_type,
        organization_id=organization_id,
        payload=payload,
        metadata=metadata,
        version=version,
    )
    try:
        async with async_session_factory() as db:
            db.add(_to_record(event))
            await db.commit()
    except Exception as e:
        logger.error(
            "Failed to publish %s event (best-effort, dropped): %s",
            event.type, str(e),
        )
        return PublishResult(event, PublishGuarantee.BEST_EFFORT, persisted=False, error=str(e))

    logger.info("Event published: type=%s id=%s", event.type, str(event.event_id)[:8])
    await request_outbox_drain()
    return PublishResult(event, PublishGuarantee.BEST_EFFORT, persisted=True)


async def publish_simple_event(
    event_type: Union[str, EventType],
    actor_id,
    organization_id=None,
    payload: Optional[dict] = None,
) -> PublishResult:
    """Best-effort user event; stamps the payload with its publish time."""
    stamped = {**(payload or {}), "timestamp": datetime.now(timezone.utc).isoformat()}
    return await publish_event(
        event_type,
        actor_id=actor_id,
        actor_type="user",
        organization_id=organization_id,
        payload=stamped,
        metadata=create_event_metadata("api"),
    )


async def publish_system_event(
    event_type: Union[str, EventType],
    payload: Optional[dict] = None,
    actor_id=None,
    actor_type: str = "system",
    organization_id=None,
) -> PublishResult:
    return await publish_event(
        event_type,
        actor_id=actor_id or actor_type,
        actor_type=actor_type,
        organization_id=organization_id,
        payload=payload,
        metadata=create_event_metadata("system"),
    )


async def request_outbox_drain() -> Optional[str]:
    """
    Ask the workers to drain the outbox now instead of on the next scheduled tick.
    A request that arrives while a drain is running makes that drain run once
    more after it finishes, so events committed mid-run are not left waiting.
    """
    from src.services.job_queue import add_job, QueueUnavailableError, TASK_PROCESS_OUTBOX_EVENT

    try:
        return await add_job(
            TASK_PROCESS_OUTBOX_EVENT,
            {},
            job_key=OUTBOX_DRAIN_JOB_KEY,
            max_attempts=get_settings().outbox_max_retries,
            rerun_if_running=True,
        )
    except QueueUnavailableError as e:
        logger.warning("Outbox drain not requested: %s", str(e))
        return None
