"""
Domain model for the Loan Lead Pipeline.

Visitors, return tokens, credit check results, leads and activity records.
"""

import copy
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidTransition


def utcnow() -> datetime:
    """Naive UTC timestamp used throughout the pipeline and the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class CreditStatus(Enum):
    """Credit state carried on a visitor."""
    UNKNOWN = "unknown"
    APPROVED = "approved"
    DECLINED = "declined"


@dataclass
class Visitor:
    """Identity anchor for a prospective customer. Never holds a raw email."""

    id: str
    email_hash: str
    session_id: str
    last_activity_at: datetime
    abandonment_step: int = 1
    abandoned: bool = False
    phone_number: Optional[str] = None
    credit_status: CreditStatus = CreditStatus.UNKNOWN
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email_hash": self.email_hash,
            "session_id": self.session_id,
            "last_activity_at": self.last_activity_at.isoformat(),
            "abandonment_step": self.abandonment_step,
            "abandoned": self.abandoned,
            "phone_number": self.phone_number,
            "credit_status": self.credit_status.value,
            "metadata": copy.deepcopy(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ReturnToken:
    """Single-use capability granting session continuation."""

    token: str
    visitor_id: str
    issued_at: datetime
    expires_at: datetime
    abandonment_step: int = 1
    used: bool = False
    used_at: Optional[datetime] = None
    message_sent: bool = False
    provider_message_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_redeemable(self, now: datetime) -> bool:
        return not self.used and not self.is_expired(now)


@dataclass(frozen=True)
class CreditCheckResult:
    """Outcome of a soft credit pull, cached by normalized phone number."""

    id: str
    phone_number: str
    approved: bool
    score: Optional[int]
    cached_at: datetime
    approved_amount: Optional[float] = None
    rate: Optional[float] = None
    decline_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["cached_at"] = self.cached_at.isoformat()
        if self.approved:
            data.pop("decline_reasons")
        else:
            data.pop("approved_amount")
            data.pop("rate")
        return data


class LeadStatus(Enum):
    """Lead status in the submission lifecycle."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUBMITTED = "submitted"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


# Forward-only, except FAILED/DEAD_LETTERED -> PROCESSING on retry.
LEAD_TRANSITIONS = {
    LeadStatus.PENDING: {LeadStatus.PROCESSING},
    LeadStatus.PROCESSING: {LeadStatus.SUBMITTED, LeadStatus.FAILED, LeadStatus.DEAD_LETTERED},
    LeadStatus.FAILED: {LeadStatus.PROCESSING, LeadStatus.DEAD_LETTERED},
    LeadStatus.DEAD_LETTERED: {LeadStatus.PROCESSING},
    LeadStatus.SUBMITTED: set(),
}


@dataclass
class Lead:
    """Terminal work item submitted to the dealer CRM."""

    id: str
    visitor_id: str
    credit_check_id: str
    lead_data: Dict[str, Any]
    status: LeadStatus = LeadStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    external_reference: Optional[str] = None
    submitted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def transition(self, new_status: LeadStatus, now: Optional[datetime] = None) -> None:
        """Move to a new status, rejecting moves the lifecycle does not allow."""
        if new_status not in LEAD_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Lead {self.id}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status = new_status
        self.updated_at = now or utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in (LeadStatus.SUBMITTED, LeadStatus.DEAD_LETTERED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "visitor_id": self.visitor_id,
            "credit_check_id": self.credit_check_id,
            "lead_data": copy.deepcopy(self.lead_data),
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "external_reference": self.external_reference,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class DeadLetterEntry:
    """A lead parked for manual or scheduled reprocessing."""

    lead_id: str
    error: str
    attempts: int
    dead_lettered_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


class ActivityOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ActivityRecord:
    """Immutable audit entry written by every stage."""

    id: str
    stage: str
    action: str
    target_id: Optional[str]
    outcome: ActivityOutcome
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage,
            "action": self.action,
            "target_id": self.target_id,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": copy.deepcopy(self.metadata),
        }
