"""
Typed pipeline events and the in-process event bus.

Each stage consumes the previous stage's event and produces the next one:

    LeadReady -> MessageSent -> CreditCheckRequested
      -> CreditApproved | CreditDeclined -> LeadSubmitted | LeadDeadLettered
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Deque, Dict, List, Optional, Set, Union

from .models import CreditCheckResult, new_id, utcnow
from . import metrics

logger = logging.getLogger(__name__)


class EventName(Enum):
    LEAD_READY = "lead_ready"
    MESSAGE_SENT = "message_sent"
    CREDIT_CHECK_REQUESTED = "credit_check_requested"
    CREDIT_APPROVED = "credit_approved"
    CREDIT_DECLINED = "credit_declined"
    LEAD_SUBMITTED = "lead_submitted"
    LEAD_DEAD_LETTERED = "lead_dead_lettered"


@dataclass(frozen=True)
class _Event:
    name: ClassVar[EventName]

    visitor_id: str
    event_id: str = field(default_factory=new_id, kw_only=True)
    occurred_at: datetime = field(default_factory=utcnow, kw_only=True)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.name.value}
        for key, value in self.__dict__.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, CreditCheckResult):
                value = value.to_dict()
            data[key] = value
        return data


@dataclass(frozen=True)
class LeadReady(_Event):
    name: ClassVar[EventName] = EventName.LEAD_READY
    abandonment_step: int = 1


@dataclass(frozen=True)
class MessageSent(_Event):
    name: ClassVar[EventName] = EventName.MESSAGE_SENT
    token_expires_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None


@dataclass(frozen=True)
class CreditCheckRequested(_Event):
    name: ClassVar[EventName] = EventName.CREDIT_CHECK_REQUESTED
    phone_number: str = ""


@dataclass(frozen=True)
class CreditApproved(_Event):
    name: ClassVar[EventName] = EventName.CREDIT_APPROVED
    result: Optional[CreditCheckResult] = None

    @property
    def score(self) -> Optional[int]:
        return self.result.score if self.result else None

    @property
    def approved_amount(self) -> Optional[float]:
        return self.result.approved_amount if self.result else None

    @property
    def rate(self) -> Optional[float]:
        return self.result.rate if self.result else None


@dataclass(frozen=True)
class CreditDeclined(_Event):
    name: ClassVar[EventName] = EventName.CREDIT_DECLINED
    result: Optional[CreditCheckResult] = None

    @property
    def decline_reasons(self) -> List[str]:
        return list(self.result.decline_reasons) if self.result else []


@dataclass(frozen=True)
class LeadSubmitted(_Event):
    name: ClassVar[EventName] = EventName.LEAD_SUBMITTED
    lead_id: str = ""
    external_reference: Optional[str] = None


@dataclass(frozen=True)
class LeadDeadLettered(_Event):
    name: ClassVar[EventName] = EventName.LEAD_DEAD_LETTERED
    lead_id: str = ""
    error: str = ""
    attempts: int = 0


PipelineEvent = Union[
    LeadReady,
    MessageSent,
    CreditCheckRequested,
    CreditApproved,
    CreditDeclined,
    LeadSubmitted,
    LeadDeadLettered,
]

Handler = Callable[[Any], Awaitable[None]]


@dataclass
class FailedDelivery:
    """An event a handler could not process, kept for replay."""
    event: PipelineEvent
    handler: Handler
    error: str
    attempts: int = 1
    failed_at: datetime = field(default_factory=utcnow)


class EventBus:
    """
    Explicit publish/subscribe channel between pipeline stages.

    Delivery is at-least-once: a handler that raises is recorded in
    ``undelivered`` and can be re-driven with ``replay_undelivered``.
    A delivery is given up after ``max_delivery_attempts`` and the backlog
    holds at most ``max_undelivered`` entries, dropping the oldest.

    In ``background`` mode ``publish`` returns as soon as delivery has been
    scheduled; ``drain`` waits for every scheduled delivery to finish.
    """

    def __init__(
        self,
        background: bool = False,
        history_size: int = 1000,
        max_undelivered: int = 1000,
        max_delivery_attempts: int = 5,
    ):
        self.background = background
        self.max_undelivered = max_undelivered
        self.max_delivery_attempts = max_delivery_attempts
        self._handlers: Dict[EventName, List[Handler]] = defaultdict(list)
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._replaying = False
        self.history: Deque[PipelineEvent] = deque(maxlen=history_size)
        self.undelivered: List[FailedDelivery] = []

    def subscribe(self, name: EventName, handler: Handler) -> None:
        self._handlers[name].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {name.value}")

    async def publish(self, event: PipelineEvent) -> None:
        self.history.append(event)
        metrics.record_event(event.name.value)
        handlers = list(self._handlers.get(event.name, []))
        if not handlers:
            logger.debug(f"No subscribers for {event.name.value}")
            return

        if self.background:
            task = asyncio.ensure_future(self._deliver_all(event, handlers))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            await self._deliver_all(event, handlers)

    async def _deliver_all(self, event: PipelineEvent, handlers: List[Handler]) -> None:
        await asyncio.gather(*(self._deliver(event, h) for h in handlers))

    async def _deliver(self, event: PipelineEvent, handler: Handler, attempts: int = 1) -> bool:
        try:
            await handler(event)
            return True
        except Exception as e:
            logger.exception(
                f"Handler failed for {event.name.value} (attempt {attempts})",
                extra={"visitor_id": event.visitor_id, "event_id": event.event_id},
            )
            metrics.record_delivery_failure(event.name.value)
            self._keep_for_replay(FailedDelivery(event=event, handler=handler, error=str(e), attempts=attempts))
            return False

    def _keep_for_replay(self, failure: FailedDelivery) -> None:
        event = failure.event
        if failure.attempts >= self.max_delivery_attempts:
            logger.error(
                f"Giving up on {event.name.value} {event.event_id} for visitor {event.visitor_id} "
                f"after {failure.attempts} attempts: {failure.error}"
            )
            metrics.record_delivery_abandoned(event.name.value)
            return

        if len(self.undelivered) >= self.max_undelivered:
            dropped = self.undelivered.pop(0)
            logger.error(
                f"Undelivered backlog full, dropping {dropped.event.name.value} {dropped.event.event_id}"
            )
            metrics.record_delivery_abandoned(dropped.event.name.value)
        self.undelivered.append(failure)

    async def replay_undelivered(self) -> int:
        """Re-deliver failed events once; returns how many succeeded."""
        if self._replaying:
            logger.warning("Event replay already running, skipping")
            return 0

        self._replaying = True
        try:
            pending, self.undelivered = self.undelivered, []
            delivered = 0
            for failure in pending:
                if await self._deliver(failure.event, failure.handler, failure.attempts + 1):
                    delivered += 1
            if pending:
                logger.info(f"Replayed {len(pending)} undelivered events, {delivered} succeeded")
            return delivered
        finally:
            self._replaying = False

    async def drain(self) -> None:
        """Wait for background deliveries, including ones they schedule."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def events_for(self, visitor_id: str) -> List[PipelineEvent]:
        return [e for e in self.history if e.visitor_id == visitor_id]
