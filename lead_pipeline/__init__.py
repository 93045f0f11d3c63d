"""
Lead Pipeline Module for the Loan Lead Pipeline.

Five stages connected by an event bus:
- Abandonment detection (Visitor records, LeadReady)
- Re-engagement dispatch (return tokens, MessageSent)
- Session recovery and chat (token redemption, CreditCheckRequested)
- Credit evaluation (cached soft pull, CreditApproved / CreditDeclined)
- Lead packaging and submission (CRM delivery, retries, dead letters)
"""

from .abandonment import AbandonmentDetector, SweepResult
from .activity_log import ActivityLog, AuditSink, InMemoryAuditSink
from .capabilities import (
    ContactDirectory,
    CreditScorer,
    CRMResponse,
    CRMSubmitter,
    MessageSender,
    ScoreResponse,
    SendResult,
)
from .credit import CREDIT_CACHE_TTL, CreditEvaluator
from .events import EventBus, EventName
from .lead_packaging import (
    MAX_SUBMISSION_ATTEMPTS,
    DeadLetterReprocessor,
    LeadPackager,
    LeadSubmitter,
    SubmissionResult,
)
from .models import (
    ActivityRecord,
    CreditCheckResult,
    CreditStatus,
    DeadLetterEntry,
    Lead,
    LeadStatus,
    ReturnToken,
    Visitor,
)
from .orchestrator import LeadPipeline, PeriodicJob
from .reengagement import RETURN_TOKEN_TTL, DispatchResult, ReengagementDispatcher
from .session_recovery import ChatTurn, RedemptionResult, SessionRecovery
from .stores import TokenRejection

__all__ = [
    "AbandonmentDetector",
    "SweepResult",
    "ActivityLog",
    "AuditSink",
    "InMemoryAuditSink",
    "ContactDirectory",
    "CreditScorer",
    "CRMResponse",
    "CRMSubmitter",
    "MessageSender",
    "ScoreResponse",
    "SendResult",
    "CREDIT_CACHE_TTL",
    "CreditEvaluator",
    "EventBus",
    "EventName",
    "MAX_SUBMISSION_ATTEMPTS",
    "DeadLetterReprocessor",
    "LeadPackager",
    "LeadSubmitter",
    "SubmissionResult",
    "ActivityRecord",
    "CreditCheckResult",
    "CreditStatus",
    "DeadLetterEntry",
    "Lead",
    "LeadStatus",
    "ReturnToken",
    "Visitor",
    "LeadPipeline",
    "PeriodicJob",
    "RETURN_TOKEN_TTL",
    "DispatchResult",
    "ReengagementDispatcher",
    "ChatTurn",
    "RedemptionResult",
    "SessionRecovery",
    "TokenRejection",
]
