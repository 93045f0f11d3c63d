"""
Activity Log for the Loan Lead Pipeline.

Append-only, time-ordered audit trail written by every stage.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable
from datetime import datetime

from .models import ActivityOutcome, ActivityRecord, new_id, utcnow
from . import metrics

logger = logging.getLogger(__name__)

# Never written to the audit trail, whatever a caller passes in.
REDACTED_KEYS = {"email", "raw_email", "email_address", "ssn", "password"}


@runtime_checkable
class AuditSink(Protocol):
    """Durable, append-only destination for activity records."""

    async def append(self, record: ActivityRecord) -> None:
        ...

    async def query(
        self,
        target_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: int = 100,
    ) -> List[ActivityRecord]:
        ...


class InMemoryAuditSink:
    """Process-local audit sink."""

    def __init__(self):
        self._records: List[ActivityRecord] = []

    async def append(self, record: ActivityRecord) -> None:
        self._records.append(record)

    async def query(
        self,
        target_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: int = 100,
    ) -> List[ActivityRecord]:
        matches = [
            r for r in self._records
            if (target_id is None or r.target_id == target_id)
            and (stage is None or r.stage == stage)
        ]
        return matches[-limit:]

    @property
    def records(self) -> List[ActivityRecord]:
        return list(self._records)


class ActivityLog:
    """Builds activity records and appends them to the configured sink."""

    def __init__(self, sink: AuditSink, clock: Callable[[], datetime] = utcnow):
        self.sink = sink
        self._clock = clock

    async def record(
        self,
        stage: str,
        action: str,
        target_id: Optional[str],
        outcome: ActivityOutcome = ActivityOutcome.SUCCESS,
        **details: Any,
    ) -> ActivityRecord:
        record = ActivityRecord(
            id=new_id(),
            stage=stage,
            action=action,
            target_id=target_id,
            outcome=outcome,
            timestamp=self._clock(),
            metadata=self._scrub(details),
        )
        await self.sink.append(record)
        metrics.record_stage_outcome(stage, outcome.value)
        logger.debug(f"Activity: {stage}.{action} target={target_id} outcome={outcome.value}")
        return record

    async def success(self, stage: str, action: str, target_id: Optional[str], **details: Any) -> ActivityRecord:
        return await self.record(stage, action, target_id, ActivityOutcome.SUCCESS, **details)

    async def failure(self, stage: str, action: str, target_id: Optional[str], **details: Any) -> ActivityRecord:
        return await self.record(stage, action, target_id, ActivityOutcome.FAILURE, **details)

    async def skipped(self, stage: str, action: str, target_id: Optional[str], **details: Any) -> ActivityRecord:
        return await self.record(stage, action, target_id, ActivityOutcome.SKIPPED, **details)

    async def query(self, target_id: Optional[str] = None, stage: Optional[str] = None, limit: int = 100):
        return await self.sink.query(target_id=target_id, stage=stage, limit=limit)

    @staticmethod
    def _scrub(details: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in details.items() if k.lower() not in REDACTED_KEYS}
