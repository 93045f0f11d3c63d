"""
Lead Packager and Submitter for the Loan Lead Pipeline.

Packages an approved visitor into a frozen lead snapshot and delivers it
to the dealer CRM with bounded retry, exponential backoff and a
dead-letter store for leads that exhaust their attempts.
"""

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .activity_log import ActivityLog
from .capabilities import CRMSubmitter
from .concurrency import SingleFlight
from .errors import (
    ExternalError,
    InvalidTransition,
    LeadNotFound,
    TransientExternalError,
    ValidationError,
    VisitorNotFound,
    classify_status,
)
from .events import CreditDeclined, EventBus, LeadDeadLettered, LeadSubmitted
from .models import (
    CreditCheckResult,
    DeadLetterEntry,
    Lead,
    LeadStatus,
    ReturnToken,
    Visitor,
    utcnow,
)
from .stores import DeadLetterStore, LeadStore, TokenStore, VisitorStore
from . import metrics

logger = logging.getLogger(__name__)

STAGE = "lead_submitter"

# Hard ceiling per Submit call, never a default.
MAX_SUBMISSION_ATTEMPTS = 3

LEAD_SOURCE = "abandonment_recovery"


def generate_lead_id() -> str:
    return f"LD-{uuid.uuid4().hex[:16].upper()}"


@dataclass
class BackoffPolicy:
    """
    Exponential backoff between submission attempts.

    Attributes:
        base_delay: Delay after the first failed attempt, in seconds.
        multiplier: Factor applied for each further attempt.
        max_delay: Upper bound on any single delay.
    """
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


@dataclass
class SubmissionResult:
    """Outcome of one Submit call."""
    lead_id: str
    success: bool
    status: LeadStatus
    attempts: int = 0
    external_reference: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def dead_lettered(self) -> bool:
        return self.status == LeadStatus.DEAD_LETTERED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "success": self.success,
            "status": self.status.value,
            "attempts": self.attempts,
            "external_reference": self.external_reference,
            "error": self.error,
            "retryable": self.retryable,
        }


class LeadPackager:
    """Builds Lead snapshots from approved credit results."""

    def __init__(
        self,
        visitors: VisitorStore,
        tokens: TokenStore,
        leads: LeadStore,
        activity: ActivityLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.visitors = visitors
        self.tokens = tokens
        self.leads = leads
        self.activity = activity
        self._clock = clock

    async def package(self, visitor_id: str, credit_result: CreditCheckResult) -> Lead:
        """
        Create the Lead for an approved credit result.

        Idempotent per credit check: a repeated call returns the Lead that
        was already packaged, untouched.
        """
        if not credit_result.approved:
            raise ValidationError("Lead packaging requires an approved credit result")

        visitor = await self.visitors.get(visitor_id)
        if visitor is None:
            raise VisitorNotFound(visitor_id)

        tokens = await self.tokens.list_for_visitor(visitor_id)
        now = self._clock()
        lead_data = self._snapshot(visitor, tokens, credit_result, now)

        lead, created = await self.leads.create(Lead(
            id=generate_lead_id(),
            visitor_id=visitor_id,
            credit_check_id=credit_result.id,
            lead_data=lead_data,
            created_at=now,
            updated_at=now,
        ))

        if created:
            await self.activity.success(
                STAGE, "lead_packaged", lead.id,
                visitor_id=visitor_id,
                credit_check_id=credit_result.id,
            )
            logger.info(f"Lead {lead.id} packaged for visitor {visitor_id}")
        else:
            await self.activity.skipped(
                STAGE, "lead_already_packaged", lead.id,
                visitor_id=visitor_id,
                credit_check_id=credit_result.id,
            )
            logger.info(f"Lead {lead.id} already packaged for credit check {credit_result.id}")
        return lead

    async def handle_declined(self, event: CreditDeclined) -> None:
        """A decline ends the pipeline for this visitor; no Lead is created."""
        await self.activity.success(
            STAGE, "pipeline_terminated", event.visitor_id,
            reason="credit_declined",
            decline_reasons=event.decline_reasons,
        )
        logger.info(f"Pipeline terminated for visitor {event.visitor_id}: credit declined")

    @staticmethod
    def _snapshot(
        visitor: Visitor,
        tokens: List[ReturnToken],
        credit: CreditCheckResult,
        now: datetime,
    ) -> Dict[str, Any]:
        redeemed = [t for t in tokens if t.used]
        data = {
            "visitor": {
                "id": visitor.id,
                "email_hash": visitor.email_hash,
                "phone_number": visitor.phone_number or credit.phone_number,
                "session_id": visitor.session_id,
            },
            "engagement": {
                "abandonment_step": visitor.abandonment_step,
                "last_activity_at": visitor.last_activity_at.isoformat(),
                "messages_sent": sum(1 for t in tokens if t.message_sent),
                "tokens_issued": len(tokens),
                "returned": bool(redeemed),
                "returned_at": redeemed[-1].used_at.isoformat() if redeemed and redeemed[-1].used_at else None,
            },
            "credit": credit.to_dict(),
            "metadata": {
                **visitor.metadata,
                "lead_source": LEAD_SOURCE,
                "visitor_created_at": visitor.created_at.isoformat(),
                "packaged_at": now.isoformat(),
            },
        }
        return copy.deepcopy(data)


class LeadSubmitter:
    """
    Delivers leads to the dealer CRM.

    5xx responses and timeouts are retried up to MAX_SUBMISSION_ATTEMPTS
    with exponential backoff, then the lead is dead-lettered. 4xx responses
    stop immediately. Calls for the same lead id share one in-flight
    submission.
    """

    def __init__(
        self,
        leads: LeadStore,
        crm: CRMSubmitter,
        dead_letters: DeadLetterStore,
        bus: EventBus,
        activity: ActivityLog,
        backoff: Optional[BackoffPolicy] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.leads = leads
        self.crm = crm
        self.dead_letters = dead_letters
        self.bus = bus
        self.activity = activity
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._flights = SingleFlight()

    async def submit(self, lead: Union[Lead, str]) -> SubmissionResult:
        lead_id = lead.id if isinstance(lead, Lead) else lead
        return await self._flights.run(lead_id, lambda: self._submit(lead_id))

    def in_flight(self, lead_id: str) -> bool:
        return self._flights.in_flight(lead_id)

    async def _submit(self, lead_id: str) -> SubmissionResult:
        lead = await self.leads.get(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)

        if lead.status == LeadStatus.SUBMITTED:
            logger.info(f"Lead {lead_id} already submitted, skipping CRM call")
            return SubmissionResult(
                lead_id=lead_id,
                success=True,
                status=lead.status,
                external_reference=lead.external_reference,
            )

        if lead.status == LeadStatus.PROCESSING:
            # Calls for one lead id are single-flight, so this is left over
            # from an interrupted run rather than a live submission.
            logger.warning(f"Lead {lead_id} found in processing, recovering interrupted submission")
            lead.transition(LeadStatus.FAILED, self._clock())
            lead.last_error = lead.last_error or "Interrupted submission"
            await self.leads.save(lead)

        payload = {"lead_id": lead.id, **copy.deepcopy(lead.lead_data)}
        attempts_before = lead.attempts
        try:
            return await self._deliver(lead, payload)
        except Exception as e:
            return await self._crashed(lead, lead.attempts - attempts_before, e)

    async def _deliver(self, lead: Lead, payload: Dict[str, Any]) -> SubmissionResult:
        for attempt in range(1, MAX_SUBMISSION_ATTEMPTS + 1):
            lead.transition(LeadStatus.PROCESSING, self._clock())
            lead.attempts += 1
            await self.leads.save(lead)

            reference, error = await self._attempt(payload)

            if error is None:
                return await self._succeeded(lead, attempt, reference)

            lead.last_error = str(error)
            if not error.retryable:
                metrics.record_submission_attempt("terminal")
                return await self._rejected(lead, attempt, error)

            metrics.record_submission_attempt("retryable")
            if attempt == MAX_SUBMISSION_ATTEMPTS:
                return await self._dead_letter(lead, attempt, error)

            lead.transition(LeadStatus.FAILED, self._clock())
            await self.leads.save(lead)

            delay = self.backoff.delay_for(attempt)
            await self.activity.failure(
                STAGE, "submission_attempt_failed", lead.id,
                attempt=attempt,
                error=str(error),
                retry_in_seconds=delay,
            )
            logger.warning(
                f"Lead {lead.id} attempt {attempt}/{MAX_SUBMISSION_ATTEMPTS} failed, "
                f"retrying in {delay:.2f}s: {error}"
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")

    async def _attempt(self, payload: Dict[str, Any]):
        """One CRM call; returns (reference, error) with error None on success."""
        try:
            response = await asyncio.wait_for(self.crm.submit(payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            return None, TransientExternalError("CRM submission timed out")
        except ExternalError as e:
            return None, e

        error = classify_status(response.status_code, f"CRM returned {response.status_code}")
        return response.reference, error

    async def _succeeded(self, lead: Lead, attempts: int, reference: Optional[str]) -> SubmissionResult:
        now = self._clock()
        lead.transition(LeadStatus.SUBMITTED, now)
        lead.submitted_at = now
        lead.external_reference = reference
        lead.last_error = None
        await self.leads.save(lead)
        await self.dead_letters.resolve(lead.id, now)

        metrics.record_submission_attempt("success")
        await self.activity.success(
            STAGE, "lead_submitted", lead.id,
            attempts=attempts,
            external_reference=reference,
        )
        logger.info(f"Lead {lead.id} submitted (reference={reference}, attempts={attempts})")

        await self.bus.publish(LeadSubmitted(
            visitor_id=lead.visitor_id,
            lead_id=lead.id,
            external_reference=reference,
        ))
        return SubmissionResult(
            lead_id=lead.id,
            success=True,
            status=lead.status,
            attempts=attempts,
            external_reference=reference,
        )

    async def _rejected(self, lead: Lead, attempts: int, error: ExternalError) -> SubmissionResult:
        lead.transition(LeadStatus.FAILED, self._clock())
        await self.leads.save(lead)
        await self.activity.failure(
            STAGE, "lead_rejected", lead.id,
            attempts=attempts,
            status_code=error.status_code,
            error=str(error),
        )
        logger.error(f"Lead {lead.id} rejected by CRM: {error}")
        return SubmissionResult(
            lead_id=lead.id,
            success=False,
            status=lead.status,
            attempts=attempts,
            error=str(error),
            retryable=False,
        )

    async def _crashed(self, lead: Lead, attempts: int, error: Exception) -> SubmissionResult:
        """Settle a lead whose submission raised something other than an ExternalError."""
        logger.exception(f"Submission of lead {lead.id} failed unexpectedly")
        if lead.status == LeadStatus.PROCESSING:
            lead.transition(LeadStatus.FAILED, self._clock())
        if lead.status != LeadStatus.SUBMITTED:
            lead.last_error = f"Unexpected submission error: {type(error).__name__}"
        await self.leads.save(lead)

        metrics.record_submission_attempt("error")
        await self.activity.failure(
            STAGE, "submission_error", lead.id,
            attempts=attempts,
            error=type(error).__name__,
        )
        return SubmissionResult(
            lead_id=lead.id,
            success=lead.status == LeadStatus.SUBMITTED,
            status=lead.status,
            attempts=attempts,
            external_reference=lead.external_reference,
            error=lead.last_error,
            retryable=False,
        )

    async def _dead_letter(self, lead: Lead, attempts: int, error: ExternalError) -> SubmissionResult:
        now = self._clock()
        lead.transition(LeadStatus.DEAD_LETTERED, now)
        await self.leads.save(lead)
        await self.dead_letters.add(DeadLetterEntry(
            lead_id=lead.id,
            error=str(error),
            attempts=lead.attempts,
            dead_lettered_at=now,
        ))

        metrics.record_dead_letter()
        await self.activity.failure(
            STAGE, "lead_dead_lettered", lead.id,
            attempts=attempts,
            error=str(error),
        )
        logger.error(f"Lead {lead.id} dead-lettered after {attempts} attempts: {error}")

        await self.bus.publish(LeadDeadLettered(
            visitor_id=lead.visitor_id,
            lead_id=lead.id,
            error=str(error),
            attempts=attempts,
        ))
        return SubmissionResult(
            lead_id=lead.id,
            success=False,
            status=lead.status,
            attempts=attempts,
            error=str(error),
            retryable=True,
        )


@dataclass
class ReprocessResult:
    attempted: int = 0
    submitted: int = 0
    failed: int = 0
    skipped: bool = False


class DeadLetterReprocessor:
    """Resubmits unresolved dead letters through the normal Submit path."""

    def __init__(self, dead_letters: DeadLetterStore, submitter: LeadSubmitter):
        self.dead_letters = dead_letters
        self.submitter = submitter
        self._running = False

    async def run_once(self) -> ReprocessResult:
        if self._running:
            logger.warning("Dead-letter reprocessing already running, skipping")
            return ReprocessResult(skipped=True)

        self._running = True
        result = ReprocessResult()
        try:
            for entry in await self.dead_letters.list():
                result.attempted += 1
                try:
                    outcome = await self.submitter.submit(entry.lead_id)
                except LeadNotFound:
                    logger.warning(f"Dead letter references unknown lead {entry.lead_id}")
                    result.failed += 1
                    continue
                except InvalidTransition as e:
                    logger.error(f"Dead letter for lead {entry.lead_id} cannot be resubmitted: {e}")
                    result.failed += 1
                    continue
                if outcome.success:
                    result.submitted += 1
                else:
                    result.failed += 1

            logger.info(
                f"Dead-letter reprocessing: {result.submitted}/{result.attempted} resubmitted"
            )
            return result
        finally:
            self._running = False
