"""
SQL-backed implementations of the pipeline store protocols.

Each operation runs in its own session and commits before returning.
Uniqueness (one visitor per email hash, one lead per credit check) is
enforced by the schema; token redemption is a conditional UPDATE.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lead_pipeline.models import (
    ActivityOutcome,
    ActivityRecord,
    CreditStatus,
    DeadLetterEntry,
    Lead,
    LeadStatus,
    ReturnToken,
    Visitor,
)
from lead_pipeline.stores import VISITOR_UPDATABLE_FIELDS, TokenConsumeResult, TokenRejection

from .models import ActivityRow, DeadLetterRow, LeadRow, ReturnTokenRow, VisitorRow
from .repositories import (
    ActivityRepository,
    DeadLetterRepository,
    LeadRepository,
    ReturnTokenRepository,
    VisitorRepository,
)

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _visitor(row: VisitorRow) -> Visitor:
    return Visitor(
        id=row.id,
        email_hash=row.email_hash,
        session_id=row.session_id,
        last_activity_at=row.last_activity_at,
        abandonment_step=row.abandonment_step,
        abandoned=row.abandoned,
        phone_number=row.phone_number,
        credit_status=CreditStatus(row.credit_status),
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
    )


def _token(row: ReturnTokenRow) -> ReturnToken:
    return ReturnToken(
        token=row.token,
        visitor_id=row.visitor_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        abandonment_step=row.abandonment_step,
        used=row.used,
        used_at=row.used_at,
        message_sent=row.message_sent,
        provider_message_id=row.provider_message_id,
    )


def _lead(row: LeadRow) -> Lead:
    return Lead(
        id=row.id,
        visitor_id=row.visitor_id,
        credit_check_id=row.credit_check_id,
        lead_data=row.lead_data,
        status=LeadStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        external_reference=row.external_reference,
        submitted_at=row.submitted_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _dead_letter(row: DeadLetterRow) -> DeadLetterEntry:
    return DeadLetterEntry(
        lead_id=row.lead_id,
        error=row.error,
        attempts=row.attempts,
        dead_lettered_at=row.dead_lettered_at,
        resolved_at=row.resolved_at,
    )


def _activity(row: ActivityRow) -> ActivityRecord:
    return ActivityRecord(
        id=row.id,
        stage=row.stage,
        action=row.action,
        target_id=row.target_id,
        outcome=ActivityOutcome(row.outcome),
        timestamp=row.timestamp,
        metadata=dict(row.metadata_json or {}),
    )


class SqlVisitorStore:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory

    async def get(self, visitor_id: str) -> Optional[Visitor]:
        async with self._sessions() as session:
            row = await VisitorRepository(session).get_by_id(visitor_id)
            return _visitor(row) if row else None

    async def get_by_email_hash(self, email_hash: str) -> Optional[Visitor]:
        async with self._sessions() as session:
            row = await VisitorRepository(session).get_by_email_hash(email_hash)
            return _visitor(row) if row else None

    async def get_or_create(self, visitor: Visitor) -> Tuple[Visitor, bool]:
        async with self._sessions() as session:
            repo = VisitorRepository(session)
            row = await repo.get_by_email_hash(visitor.email_hash)
            if row:
                return _visitor(row), False
            try:
                row = await repo.create(
                    id=visitor.id,
                    email_hash=visitor.email_hash,
                    session_id=visitor.session_id,
                    last_activity_at=visitor.last_activity_at,
                    abandonment_step=visitor.abandonment_step,
                    abandoned=visitor.abandoned,
                    phone_number=visitor.phone_number,
                    credit_status=visitor.credit_status.value,
                    metadata_json=dict(visitor.metadata),
                    created_at=visitor.created_at,
                )
                await session.commit()
                return _visitor(row), True
            except IntegrityError:
                # Lost the race to another writer for the same hash
                await session.rollback()
                row = await repo.get_by_email_hash(visitor.email_hash)
                return _visitor(row), False

    async def save(self, visitor: Visitor) -> Visitor:
        async with self._sessions() as session:
            await VisitorRepository(session).update(
                visitor.id,
                session_id=visitor.session_id,
                last_activity_at=visitor.last_activity_at,
                abandonment_step=visitor.abandonment_step,
                abandoned=visitor.abandoned,
                phone_number=visitor.phone_number,
                credit_status=visitor.credit_status.value,
                metadata_json=dict(visitor.metadata),
            )
            await session.commit()
        return visitor

    async def update(self, visitor_id: str, **fields: Any) -> Optional[Visitor]:
        unknown = set(fields) - VISITOR_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update visitor fields: {sorted(unknown)}")

        values = {}
        for name, value in fields.items():
            if name == "credit_status":
                value = value.value
            elif name == "metadata":
                name, value = "metadata_json", dict(value)
            values[name] = value

        async with self._sessions() as session:
            repo = VisitorRepository(session)
            if not await repo.update_columns(visitor_id, **values):
                return None
            await session.commit()
            row = await repo.get_by_id(visitor_id)
            return _visitor(row) if row else None

    async def list_inactive(self, before: datetime) -> List[Visitor]:
        async with self._sessions() as session:
            rows = await VisitorRepository(session).list_inactive(before)
            return [_visitor(r) for r in rows]


class SqlTokenStore:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory

    async def create(self, token: ReturnToken) -> ReturnToken:
        async with self._sessions() as session:
            await ReturnTokenRepository(session).create(
                token=token.token,
                visitor_id=token.visitor_id,
                issued_at=token.issued_at,
                expires_at=token.expires_at,
                abandonment_step=token.abandonment_step,
                used=token.used,
                used_at=token.used_at,
                message_sent=token.message_sent,
                provider_message_id=token.provider_message_id,
            )
            await session.commit()
        return token

    async def get(self, token: str) -> Optional[ReturnToken]:
        async with self._sessions() as session:
            row = await ReturnTokenRepository(session).get(token)
            return _token(row) if row else None

    async def save(self, token: ReturnToken) -> ReturnToken:
        """Persists delivery flags only; ``used`` is owned by consume."""
        async with self._sessions() as session:
            await ReturnTokenRepository(session).mark_sent(
                token.token, token.message_sent, token.provider_message_id
            )
            await session.commit()
        return token

    async def consume(self, token: str, now: datetime) -> TokenConsumeResult:
        async with self._sessions() as session:
            repo = ReturnTokenRepository(session)
            row = await repo.get(token)
            if row is None:
                return TokenConsumeResult(rejection=TokenRejection.NOT_FOUND)
            if now > row.expires_at:
                return TokenConsumeResult(rejection=TokenRejection.EXPIRED)
            won = await repo.mark_used(token, now)
            await session.commit()
            if not won:
                return TokenConsumeResult(rejection=TokenRejection.ALREADY_USED)

            redeemed = _token(row)
            redeemed.used = True
            redeemed.used_at = now
            return TokenConsumeResult(token=redeemed)

    async def list_for_visitor(self, visitor_id: str) -> List[ReturnToken]:
        async with self._sessions() as session:
            rows = await ReturnTokenRepository(session).list_for_visitor(visitor_id)
            return [_token(r) for r in rows]


class SqlLeadStore:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory

    async def create(self, lead: Lead) -> Tuple[Lead, bool]:
        async with self._sessions() as session:
            repo = LeadRepository(session)
            existing = await repo.get_by_credit_check(lead.credit_check_id)
            if existing:
                return _lead(existing), False
            try:
                row = await repo.create(
                    id=lead.id,
                    visitor_id=lead.visitor_id,
                    credit_check_id=lead.credit_check_id,
                    lead_data=lead.lead_data,
                    status=lead.status.value,
                    attempts=lead.attempts,
                    last_error=lead.last_error,
                    external_reference=lead.external_reference,
                    submitted_at=lead.submitted_at,
                    created_at=lead.created_at,
                    updated_at=lead.updated_at,
                )
                await session.commit()
                return _lead(row), True
            except IntegrityError:
                await session.rollback()
                existing = await repo.get_by_credit_check(lead.credit_check_id)
                return _lead(existing), False

    async def get(self, lead_id: str) -> Optional[Lead]:
        async with self._sessions() as session:
            row = await LeadRepository(session).get_by_id(lead_id)
            return _lead(row) if row else None

    async def save(self, lead: Lead) -> Lead:
        """Lead data is write-once; only lifecycle fields are updated."""
        async with self._sessions() as session:
            await LeadRepository(session).update(
                lead.id,
                status=lead.status.value,
                attempts=lead.attempts,
                last_error=lead.last_error,
                external_reference=lead.external_reference,
                submitted_at=lead.submitted_at,
                updated_at=lead.updated_at,
            )
            await session.commit()
        return lead

    async def list(self, status: Optional[LeadStatus] = None, limit: int = 100) -> List[Lead]:
        async with self._sessions() as session:
            rows = await LeadRepository(session).list_recent(
                status=status.value if status else None, limit=limit
            )
            return [_lead(r) for r in rows]


class SqlDeadLetterStore:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory

    async def add(self, entry: DeadLetterEntry) -> None:
        async with self._sessions() as session:
            await DeadLetterRepository(session).upsert(
                lead_id=entry.lead_id,
                error=entry.error,
                attempts=entry.attempts,
                dead_lettered_at=entry.dead_lettered_at,
                resolved_at=entry.resolved_at,
            )
            await session.commit()

    async def resolve(self, lead_id: str, resolved_at: datetime) -> None:
        async with self._sessions() as session:
            await DeadLetterRepository(session).resolve(lead_id, resolved_at)
            await session.commit()

    async def list(self, include_resolved: bool = False) -> List[DeadLetterEntry]:
        async with self._sessions() as session:
            rows = await DeadLetterRepository(session).list_entries(include_resolved)
            return [_dead_letter(r) for r in rows]


class SqlAuditSink:
    def __init__(self, session_factory: SessionFactory):
        self._sessions = session_factory

    async def append(self, record: ActivityRecord) -> None:
        async with self._sessions() as session:
            await ActivityRepository(session).append(
                id=record.id,
                stage=record.stage,
                action=record.action,
                target_id=record.target_id,
                outcome=record.outcome.value,
                timestamp=record.timestamp,
                metadata_json=dict(record.metadata),
            )
            await session.commit()

    async def query(
        self,
        target_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: int = 100,
    ) -> List[ActivityRecord]:
        async with self._sessions() as session:
            rows = await ActivityRepository(session).query(target_id=target_id, stage=stage, limit=limit)
            return [_activity(r) for r in rows]
