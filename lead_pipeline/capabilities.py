"""
External capabilities the pipeline depends on.

Concrete adapters live in the integrations package; tests supply fakes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Response from a message send."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ScoreResponse:
    """Soft credit pull response."""
    approved: bool
    score: Optional[int] = None
    approved_amount: Optional[float] = None
    rate: Optional[float] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class CRMResponse:
    """Raw CRM response; the caller interprets the status code."""
    status_code: int
    body: Any = None

    @property
    def reference(self) -> Optional[str]:
        """Confirmation reference from the response body, if any."""
        if isinstance(self.body, dict):
            for key in ("leadReference", "lead_id", "leadId", "id", "reference"):
                if self.body.get(key):
                    return str(self.body[key])
            data = self.body.get("data")
            if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("id"):
                return str(data[0]["id"])
        return None


class MessageSender(ABC):
    """Sends a re-engagement message to an address."""

    @abstractmethod
    async def send(self, address: str, subject: str, body: str) -> SendResult:
        ...

    async def health_check(self) -> bool:
        return True


class CreditScorer(ABC):
    """
    Soft credit pull.

    Raises TransientExternalError on timeout/5xx and TerminalExternalError
    on 4xx or explicit rejection.
    """

    @abstractmethod
    async def score(self, phone_number: str) -> ScoreResponse:
        ...


class CRMSubmitter(ABC):
    """Delivers a lead payload to the dealer CRM."""

    @abstractmethod
    async def submit(self, lead_payload: Dict[str, Any]) -> CRMResponse:
        ...


class ContactDirectory(ABC):
    """Resolves an email hash to a deliverable address, outside visitor storage."""

    @abstractmethod
    async def resolve(self, email_hash: str) -> Optional[str]:
        ...

    @abstractmethod
    async def register(self, email: str) -> str:
        """Store a deliverable address; returns its hash."""
        ...
