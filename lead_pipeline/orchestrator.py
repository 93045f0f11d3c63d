"""
Pipeline wiring for the Loan Lead Pipeline.

Builds the five stages around shared stores and connects them through the
event bus:

    LeadReady            -> ReengagementDispatcher.dispatch
    CreditCheckRequested -> CreditEvaluator.evaluate
    CreditApproved       -> LeadPackager.package, then LeadSubmitter.submit
    CreditDeclined       -> LeadPackager.handle_declined
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .abandonment import AbandonmentDetector
from .activity_log import ActivityLog, AuditSink, InMemoryAuditSink
from .capabilities import ContactDirectory, CreditScorer, CRMSubmitter, MessageSender
from .credit import CreditEvaluator
from .events import CreditApproved, EventBus, EventName, LeadReady
from .lead_packaging import BackoffPolicy, DeadLetterReprocessor, LeadPackager, LeadSubmitter
from .models import utcnow
from .reengagement import ReengagementDispatcher
from .session_recovery import SessionRecovery
from .stores import (
    DeadLetterStore,
    InMemoryDeadLetterStore,
    InMemoryLeadStore,
    InMemoryTokenStore,
    InMemoryVisitorStore,
    LeadStore,
    TokenStore,
    VisitorStore,
)

logger = logging.getLogger(__name__)


class LeadPipeline:
    """All pipeline stages, their shared state and the bus connecting them."""

    def __init__(
        self,
        visitors: VisitorStore,
        tokens: TokenStore,
        leads: LeadStore,
        dead_letters: DeadLetterStore,
        audit_sink: AuditSink,
        sender: MessageSender,
        scorer: CreditScorer,
        crm: CRMSubmitter,
        directory: ContactDirectory,
        bus: Optional[EventBus] = None,
        base_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] = utcnow,
        inactivity_threshold: timedelta = timedelta(minutes=30),
        external_timeout: float = 10.0,
        submission_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.visitors = visitors
        self.tokens = tokens
        self.leads = leads
        self.dead_letters = dead_letters
        self.directory = directory
        self.bus = bus or EventBus()
        self.activity = ActivityLog(audit_sink, clock=clock)

        self.detector = AbandonmentDetector(
            visitors, self.bus, self.activity,
            clock=clock,
            inactivity_threshold=inactivity_threshold,
        )
        self.dispatcher = ReengagementDispatcher(
            visitors, tokens, sender, directory, self.bus, self.activity,
            base_url=base_url,
            clock=clock,
            send_timeout=external_timeout,
        )
        self.recovery = SessionRecovery(visitors, tokens, self.bus, self.activity, clock=clock)
        self.evaluator = CreditEvaluator(
            visitors, scorer, self.bus, self.activity,
            clock=clock,
            timeout=external_timeout,
        )
        self.packager = LeadPackager(visitors, tokens, leads, self.activity, clock=clock)
        self.submitter = LeadSubmitter(
            leads, crm, dead_letters, self.bus, self.activity,
            backoff=BackoffPolicy(base_delay=submission_base_delay),
            timeout=external_timeout,
            sleep=sleep,
            clock=clock,
        )
        self.reprocessor = DeadLetterReprocessor(dead_letters, self.submitter)

        self._wire()

    @classmethod
    def in_memory(
        cls,
        sender: MessageSender,
        scorer: CreditScorer,
        crm: CRMSubmitter,
        directory: ContactDirectory,
        **kwargs,
    ) -> "LeadPipeline":
        """Pipeline backed by process-local stores."""
        return cls(
            visitors=InMemoryVisitorStore(),
            tokens=InMemoryTokenStore(),
            leads=InMemoryLeadStore(),
            dead_letters=InMemoryDeadLetterStore(),
            audit_sink=InMemoryAuditSink(),
            sender=sender,
            scorer=scorer,
            crm=crm,
            directory=directory,
            **kwargs,
        )

    def _wire(self) -> None:
        self.bus.subscribe(EventName.LEAD_READY, self._on_lead_ready)
        self.bus.subscribe(EventName.CREDIT_CHECK_REQUESTED, self.evaluator.handle_requested)
        self.bus.subscribe(EventName.CREDIT_APPROVED, self._on_credit_approved)
        self.bus.subscribe(EventName.CREDIT_DECLINED, self.packager.handle_declined)

    async def _on_lead_ready(self, event: LeadReady) -> None:
        await self.dispatcher.dispatch(event.visitor_id)

    async def _on_credit_approved(self, event: CreditApproved) -> None:
        lead = await self.packager.package(event.visitor_id, event.result)
        await self.submitter.submit(lead)


class PeriodicJob:
    """
    Runs an async callable on a fixed interval until stopped.

    Exceptions from a run are logged and the schedule continues.
    """

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], Awaitable[object]]):
        self.name = name
        self.interval_seconds = interval_seconds
        self._fn = fn
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info(f"Job {self.name} disabled")
            return
        if not self.running:
            self._task = asyncio.ensure_future(self._loop())
            logger.info(f"Job {self.name} scheduled every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self._fn()
            except Exception:
                logger.exception(f"Job {self.name} failed")
