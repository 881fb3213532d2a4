"""
Event handler registry - in-process fan-out of domain events to subscribers.

The registry is an explicit object built once at boot (see
src.services.event_handlers.build_event_registry), frozen, and then shared
read-only by the outbox task and the queued-handler task.

Dispatch semantics:
- handlers run sequentially in descending priority (ties keep registration order)
- a handler raising is logged and skipped, unless it set raise_on_error
- a handler returning True stops propagation; a handler registered with
  stop_propagation stops it on any truthy return
- should_queue handlers are not awaited inline; they are enqueued as
  process-event-handler jobs keyed "<event_id>-<handler name>"
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from src.schemas.events import BaseEvent, EventType

logger = logging.getLogger(__name__)

HandlerCallback = Callable[[BaseEvent], Awaitable[Optional[bool]]]


class HandlerError(Exception):
    """A fan-out handler failed and was configured to fail the dispatch."""

    def __init__(self, handler_name: str, event_type: str, cause: Exception):
        super().__init__(f"Handler {handler_name} failed for {event_type}: {cause}")
        self.handler_name = handler_name
        self.event_type = event_type
        self.cause = cause


@dataclass(frozen=True)
class HandlerRegistration:
    name: str
    callback: HandlerCallback
    priority: int = 0
    should_queue: bool = False
    stop_propagation: bool = False
    raise_on_error: bool = False


@dataclass
class DispatchResult:
    event_id: str
    event_type: str
    invoked: list[str] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stopped_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "invoked": list(self.invoked),
            "queued": list(self.queued),
            "failed": list(self.failed),
            "stopped_by": self.stopped_by,
        }


def _type_key(event_type: Union[str, EventType]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventHandlerRegistry:
    """Maps event type to its priority-ordered handler registrations."""

    def __init__(self):
        self._handlers: dict[str, list[HandlerRegistration]] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def subscribe(
        self,
        event_type: Union[str, EventType],
        callback: HandlerCallback,
        *,
        name: Optional[str] = None,
        priority: int = 0,
        should_queue: bool = False,
        stop_propagation: bool = False,
        raise_on_error: bool = False,
    ) -> HandlerRegistration:
        """Register a handler. Only allowed before freeze()."""
        if self._frozen:
            raise RuntimeError("Event handler registry is frozen; subscribe during boot")

        key = _type_key(event_type)
        handler_name = name or getattr(callback, "__name__", None) or "anonymous"
        registrations = self._handlers.setdefault(key, [])
        if any(r.name == handler_name for r in registrations):
            raise ValueError(f"Handler {handler_name!r} already registered for {key}")

        registration = HandlerRegistration(
            name=handler_name,
            callback=callback,
            priority=priority,
            should_queue=should_queue,
            stop_propagation=stop_propagation,
            raise_on_error=raise_on_error,
        )
        registrations.append(registration)
        # sorted() is stable, so equal priorities keep registration order
        self._handlers[key] = sorted(registrations, key=lambda r: -r.priority)
        return registration

    def freeze(self) -> "EventHandlerRegistry":
        self._frozen = True
        return self

    def handlers_for(self, event_type: Union[str, EventType]) -> list[HandlerRegistration]:
        return list(self._handlers.get(_type_key(event_type), []))

    def get_handler(self, event_type: Union[str, EventType], name: str) -> Optional[HandlerRegistration]:
        for registration in self._handlers.get(_type_key(event_type), []):
            if registration.name == name:
                return registration
        return None

    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: BaseEvent) -> DispatchResult:
        """Run every handler registered for event.type, highest priority first."""
        result = DispatchResult(event_id=str(event.event_id), event_type=event.type)
        registrations = self.handlers_for(event.type)

        if not registrations:
            logger.debug("No handlers for event type %s", event.type)
            return result

        for registration in registrations:
            if registration.should_queue:
                await self._queue_handler(registration, event)
                result.queued.append(registration.name)
                continue

            try:
                outcome = await registration.callback(event)
            except Exception as e:
                result.failed.append(registration.name)
                logger.error(
                    "Event handler failed: handler=%s type=%s event=%s error=%s",
                    registration.name, event.type, str(event.event_id)[:8], str(e),
                    exc_info=True,
                )
                if registration.raise_on_error:
                    raise HandlerError(registration.name, event.type, e) from e
                continue

            result.invoked.append(registration.name)

            if outcome is True or (registration.stop_propagation and outcome):
                result.stopped_by = registration.name
                logger.info(
                    "Propagation stopped: handler=%s type=%s event=%s",
                    registration.name, event.type, str(event.event_id)[:8],
                )
                break

        return result

    async def run_handler(self, event: BaseEvent, name: str) -> Any:
        """Run one named handler inline (used by the queued-handler task)."""
        registration = self.get_handler(event.type, name)
        if registration is None:
            raise LookupError(f"No handler {name!r} registered for {event.type}")
        return await registration.callback(event)

    async def _queue_handler(self, registration: HandlerRegistration, event: BaseEvent) -> str:
        from src.config import get_settings
        from src.services.job_queue import add_job, TASK_PROCESS_EVENT_HANDLER

        job_id = await add_job(
            TASK_PROCESS_EVENT_HANDLER,
            {"event": event.model_dump(mode="json"), "handler_name": registration.name},
            job_key=f"{event.event_id}-{registration.name}",
            max_attempts=get_settings().event_handler_max_attempts,
            priority=registration.priority,
        )
        logger.info(
            "Event handler queued: handler=%s type=%s event=%s job=%s",
            registration.name, event.type, str(event.event_id)[:8], job_id[:8],
        )
        return job_id
