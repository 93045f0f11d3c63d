"""
Repository classes for the Loan Lead Pipeline data access layer.

Each repository encapsulates row-level operations for a specific model
within a caller-owned session.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ActivityRow, DeadLetterRow, LeadRow, ReturnTokenRow, VisitorRow

logger = logging.getLogger(__name__)


class VisitorRepository:
    """Data access for visitors."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> VisitorRow:
        row = VisitorRow(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_id(self, visitor_id: str) -> Optional[VisitorRow]:
        result = await self.session.execute(
            select(VisitorRow).where(VisitorRow.id == visitor_id)
        )
        return result.scalar_one_or_none()

    async def get_by_email_hash(self, email_hash: str) -> Optional[VisitorRow]:
        result = await self.session.execute(
            select(VisitorRow).where(VisitorRow.email_hash == email_hash)
        )
        return result.scalar_one_or_none()

    async def update(self, visitor_id: str, **kwargs) -> Optional[VisitorRow]:
        row = await self.get_by_id(visitor_id)
        if not row:
            return None
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        await self.session.flush()
        return row

    async def update_columns(self, visitor_id: str, **values) -> bool:
        """Targeted UPDATE of the given columns only; True if the row exists."""
        result = await self.session.execute(
            update(VisitorRow)
            .where(VisitorRow.id == visitor_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_inactive(self, before: datetime) -> List[VisitorRow]:
        result = await self.session.execute(
            select(VisitorRow)
            .where(VisitorRow.abandoned == False, VisitorRow.last_activity_at < before)  # noqa: E712
            .order_by(VisitorRow.last_activity_at.asc())
        )
        return list(result.scalars().all())


class ReturnTokenRepository:
    """Data access for return tokens."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> ReturnTokenRow:
        row = ReturnTokenRow(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get(self, token: str) -> Optional[ReturnTokenRow]:
        result = await self.session.execute(
            select(ReturnTokenRow).where(ReturnTokenRow.token == token)
        )
        return result.scalar_one_or_none()

    async def mark_used(self, token: str, used_at: datetime) -> bool:
        """Flip ``used`` only if nobody has yet; True if this call won."""
        result = await self.session.execute(
            update(ReturnTokenRow)
            .where(ReturnTokenRow.token == token, ReturnTokenRow.used == False)  # noqa: E712
            .values(used=True, used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_sent(self, token: str, message_sent: bool, provider_message_id: Optional[str]) -> None:
        await self.session.execute(
            update(ReturnTokenRow)
            .where(ReturnTokenRow.token == token)
            .values(message_sent=message_sent, provider_message_id=provider_message_id)
            .execution_options(synchronize_session=False)
        )

    async def list_for_visitor(self, visitor_id: str) -> List[ReturnTokenRow]:
        result = await self.session.execute(
            select(ReturnTokenRow)
            .where(ReturnTokenRow.visitor_id == visitor_id)
            .order_by(ReturnTokenRow.issued_at.asc())
        )
        return list(result.scalars().all())


class LeadRepository:
    """Data access for leads."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> LeadRow:
        row = LeadRow(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_id(self, lead_id: str) -> Optional[LeadRow]:
        result = await self.session.execute(
            select(LeadRow).where(LeadRow.id == lead_id)
        )
        return result.scalar_one_or_none()

    async def get_by_credit_check(self, credit_check_id: str) -> Optional[LeadRow]:
        result = await self.session.execute(
            select(LeadRow).where(LeadRow.credit_check_id == credit_check_id)
        )
        return result.scalar_one_or_none()

    async def update(self, lead_id: str, **kwargs) -> Optional[LeadRow]:
        row = await self.get_by_id(lead_id)
        if not row:
            return None
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        await self.session.flush()
        return row

    async def list_recent(self, status: Optional[str] = None, limit: int = 100) -> List[LeadRow]:
        q = select(LeadRow).order_by(LeadRow.created_at.desc()).limit(limit)
        if status:
            q = q.where(LeadRow.status == status)
        result = await self.session.execute(q)
        return list(result.scalars().all())


class DeadLetterRepository:
    """Data access for dead-lettered leads."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, **kwargs) -> DeadLetterRow:
        row = await self.session.merge(DeadLetterRow(**kwargs))
        await self.session.flush()
        return row

    async def resolve(self, lead_id: str, resolved_at: datetime) -> None:
        await self.session.execute(
            update(DeadLetterRow)
            .where(DeadLetterRow.lead_id == lead_id, DeadLetterRow.resolved_at.is_(None))
            .values(resolved_at=resolved_at)
            .execution_options(synchronize_session=False)
        )

    async def list_entries(self, include_resolved: bool = False) -> List[DeadLetterRow]:
        q = select(DeadLetterRow).order_by(DeadLetterRow.dead_lettered_at.asc())
        if not include_resolved:
            q = q.where(DeadLetterRow.resolved_at.is_(None))
        result = await self.session.execute(q)
        return list(result.scalars().all())


class ActivityRepository:
    """Data access for the activity log (append-only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, **kwargs) -> ActivityRow:
        row = ActivityRow(**kwargs)
        self.session.add(row)
        await self.session.flush()
        return row

    async def query(
        self,
        target_id: Optional[str] = None,
        stage: Optional[str] = None,
        limit: int = 100,
    ) -> List[ActivityRow]:
        """Most recent ``limit`` matching rows, oldest first."""
        q = select(ActivityRow).order_by(ActivityRow.seq.desc()).limit(limit)
        if target_id:
            q = q.where(ActivityRow.target_id == target_id)
        if stage:
            q = q.where(ActivityRow.stage == stage)
        result = await self.session.execute(q)
        return list(reversed(result.scalars().all()))
