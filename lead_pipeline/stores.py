"""
Storage protocols and in-memory implementations.

Stage logic depends only on these protocols so a durable backend
(see database.stores) can be swapped in without changing it. In-memory
stores hand out copies, so callers never alias stored state.
"""

import asyncio
import copy
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .models import DeadLetterEntry, Lead, LeadStatus, ReturnToken, Visitor

# id, email_hash and created_at are fixed at creation.
VISITOR_UPDATABLE_FIELDS = frozenset({
    "session_id",
    "last_activity_at",
    "abandonment_step",
    "abandoned",
    "phone_number",
    "credit_status",
    "metadata",
})


class TokenRejection(Enum):
    """Why a return token could not be redeemed. Expected states, not errors."""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


@dataclass
class TokenConsumeResult:
    token: Optional[ReturnToken] = None
    rejection: Optional[TokenRejection] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None and self.token is not None


@runtime_checkable
class VisitorStore(Protocol):
    async def get(self, visitor_id: str) -> Optional[Visitor]:
        ...

    async def get_by_email_hash(self, email_hash: str) -> Optional[Visitor]:
        ...

    async def get_or_create(self, visitor: Visitor) -> Tuple[Visitor, bool]:
        """Return the visitor for ``visitor.email_hash``, creating it if absent."""
        ...

    async def save(self, visitor: Visitor) -> Visitor:
        ...

    async def update(self, visitor_id: str, **fields: Any) -> Optional[Visitor]:
        """
        Write only the named fields and return the stored visitor.

        Stages own different fields, so a stage that held a visitor across
        a slow external call must not write back fields it never changed.
        """
        ...

    async def list_inactive(self, before: datetime) -> List[Visitor]:
        """Visitors not yet abandoned whose last activity is older than ``before``."""
        ...


@runtime_checkable
class TokenStore(Protocol):
    async def create(self, token: ReturnToken) -> ReturnToken:
        ...

    async def get(self, token: str) -> Optional[ReturnToken]:
        ...

    async def save(self, token: ReturnToken) -> ReturnToken:
        ...

    async def consume(self, token: str, now: datetime) -> TokenConsumeResult:
        """Atomically check validity and flip ``used``."""
        ...

    async def list_for_visitor(self, visitor_id: str) -> List[ReturnToken]:
        ...


@runtime_checkable
class LeadStore(Protocol):
    async def create(self, lead: Lead) -> Tuple[Lead, bool]:
        """Insert, or return the existing lead for the same credit check."""
        ...

    async def get(self, lead_id: str) -> Optional[Lead]:
        ...

    async def save(self, lead: Lead) -> Lead:
        ...

    async def list(self, status: Optional[LeadStatus] = None, limit: int = 100) -> List[Lead]:
        ...


@runtime_checkable
class DeadLetterStore(Protocol):
    async def add(self, entry: DeadLetterEntry) -> None:
        ...

    async def resolve(self, lead_id: str, resolved_at: datetime) -> None:
        ...

    async def list(self, include_resolved: bool = False) -> List[DeadLetterEntry]:
        ...


class InMemoryVisitorStore:
    """Visitors keyed by id with a unique email-hash index."""

    def __init__(self):
        self._visitors: Dict[str, Visitor] = {}
        self._by_hash: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, visitor_id: str) -> Optional[Visitor]:
        visitor = self._visitors.get(visitor_id)
        return copy.deepcopy(visitor) if visitor else None

    async def get_by_email_hash(self, email_hash: str) -> Optional[Visitor]:
        visitor_id = self._by_hash.get(email_hash)
        return await self.get(visitor_id) if visitor_id else None

    async def get_or_create(self, visitor: Visitor) -> Tuple[Visitor, bool]:
        async with self._lock:
            existing_id = self._by_hash.get(visitor.email_hash)
            if existing_id:
                return copy.deepcopy(self._visitors[existing_id]), False
            self._visitors[visitor.id] = copy.deepcopy(visitor)
            self._by_hash[visitor.email_hash] = visitor.id
            return copy.deepcopy(visitor), True

    async def save(self, visitor: Visitor) -> Visitor:
        async with self._lock:
            self._visitors[visitor.id] = copy.deepcopy(visitor)
            self._by_hash[visitor.email_hash] = visitor.id
        return visitor

    async def update(self, visitor_id: str, **fields: Any) -> Optional[Visitor]:
        unknown = set(fields) - VISITOR_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update visitor fields: {sorted(unknown)}")
        async with self._lock:
            visitor = self._visitors.get(visitor_id)
            if visitor is None:
                return None
            for name, value in fields.items():
                setattr(visitor, name, copy.deepcopy(value))
            return copy.deepcopy(visitor)

    async def list_inactive(self, before: datetime) -> List[Visitor]:
        return [
            copy.deepcopy(v) for v in self._visitors.values()
            if not v.abandoned and v.last_activity_at < before
        ]

    def __len__(self) -> int:
        return len(self._visitors)


class InMemoryTokenStore:
    """Return tokens with an atomic check-and-mark-used."""

    def __init__(self):
        self._tokens: Dict[str, ReturnToken] = {}
        self._lock = asyncio.Lock()

    async def create(self, token: ReturnToken) -> ReturnToken:
        async with self._lock:
            self._tokens[token.token] = copy.deepcopy(token)
        return token

    async def get(self, token: str) -> Optional[ReturnToken]:
        stored = self._tokens.get(token)
        return copy.deepcopy(stored) if stored else None

    async def save(self, token: ReturnToken) -> ReturnToken:
        async with self._lock:
            stored = self._tokens.get(token.token)
            # used is never flipped back
            if stored and stored.used:
                token.used = True
                token.used_at = stored.used_at
            self._tokens[token.token] = copy.deepcopy(token)
        return token

    async def consume(self, token: str, now: datetime) -> TokenConsumeResult:
        async with self._lock:
            stored = self._tokens.get(token)
            if stored is None:
                return TokenConsumeResult(rejection=TokenRejection.NOT_FOUND)
            if stored.is_expired(now):
                return TokenConsumeResult(rejection=TokenRejection.EXPIRED)
            if stored.used:
                return TokenConsumeResult(rejection=TokenRejection.ALREADY_USED)
            stored.used = True
            stored.used_at = now
            return TokenConsumeResult(token=copy.deepcopy(stored))

    async def list_for_visitor(self, visitor_id: str) -> List[ReturnToken]:
        tokens = [copy.deepcopy(t) for t in self._tokens.values() if t.visitor_id == visitor_id]
        return sorted(tokens, key=lambda t: t.issued_at)


class InMemoryLeadStore:
    """Leads keyed by id, unique per credit check."""

    def __init__(self):
        self._leads: Dict[str, Lead] = {}
        self._by_credit_check: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, lead: Lead) -> Tuple[Lead, bool]:
        async with self._lock:
            existing_id = self._by_credit_check.get(lead.credit_check_id)
            if existing_id:
                return copy.deepcopy(self._leads[existing_id]), False
            self._leads[lead.id] = copy.deepcopy(lead)
            self._by_credit_check[lead.credit_check_id] = lead.id
            return copy.deepcopy(lead), True

    async def get(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return copy.deepcopy(lead) if lead else None

    async def save(self, lead: Lead) -> Lead:
        async with self._lock:
            self._leads[lead.id] = copy.deepcopy(lead)
        return lead

    async def list(self, status: Optional[LeadStatus] = None, limit: int = 100) -> List[Lead]:
        leads = [l for l in self._leads.values() if status is None or l.status == status]
        leads.sort(key=lambda l: l.created_at, reverse=True)
        return [copy.deepcopy(l) for l in leads[:limit]]


class InMemoryDeadLetterStore:
    def __init__(self):
        self._entries: Dict[str, DeadLetterEntry] = {}

    async def add(self, entry: DeadLetterEntry) -> None:
        self._entries[entry.lead_id] = copy.deepcopy(entry)

    async def resolve(self, lead_id: str, resolved_at: datetime) -> None:
        entry = self._entries.get(lead_id)
        if entry and not entry.resolved:
            entry.resolved_at = resolved_at

    async def list(self, include_resolved: bool = False) -> List[DeadLetterEntry]:
        entries = [
            copy.deepcopy(e) for e in self._entries.values()
            if include_resolved or not e.resolved
        ]
        return sorted(entries, key=lambda e: e.dead_lettered_at)
