"""Shared fixtures for Loan Lead Pipeline tests."""

import asyncio
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

# Ensure we use test settings
os.environ.setdefault("EVENT_DELIVERY", "inline")
os.environ.setdefault("ABANDONMENT_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("DEAD_LETTER_REPROCESS_INTERVAL_SECONDS", "0")
os.environ.setdefault("EVENT_REPLAY_INTERVAL_SECONDS", "0")
os.environ.setdefault("BASE_URL", "https://loans.test")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")
os.environ.setdefault("RETURN_LINK_RATE_LIMIT_PER_MINUTE", "10000")
os.environ.pop("DATABASE_URL", None)

from lead_pipeline.capabilities import (  # noqa: E402
    CRMResponse, CRMSubmitter, CreditScorer, MessageSender, ScoreResponse, SendResult,
)
from lead_pipeline.contact_extractor import hash_email  # noqa: E402
from lead_pipeline.events import EventBus  # noqa: E402
from lead_pipeline.orchestrator import LeadPipeline  # noqa: E402
from integrations.contact_directory import InMemoryContactDirectory  # noqa: E402

START = datetime(2024, 1, 15, 12, 0, 0)


class FakeClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSender(MessageSender):
    def __init__(self):
        self.sent: List[Dict[str, str]] = []
        self.fail_with: Optional[str] = None
        self.delay: float = 0

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        self.sent.append({"address": address, "subject": subject, "body": body})
        return SendResult(success=True, provider_message_id=f"msg-{len(self.sent)}")


class FakeScorer(CreditScorer):
    def __init__(self, response: Optional[ScoreResponse] = None):
        self.response = response or ScoreResponse(approved=True, score=710, approved_amount=25000.0, rate=6.9)
        self.calls: List[str] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.delay: float = 0

    async def score(self, phone_number: str) -> ScoreResponse:
        self.calls.append(phone_number)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.response


class FakeCRM(CRMSubmitter):
    """Replies with queued status codes; the last one repeats."""

    def __init__(self, *statuses: int):
        self.statuses = list(statuses) or [201]
        self.payloads: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self.delay: float = 0

    @property
    def calls(self) -> int:
        return len(self.payloads)

    async def submit(self, lead_payload: Dict[str, Any]) -> CRMResponse:
        self.payloads.append(lead_payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        body = {"leadReference": f"ref-{len(self.payloads)}"} if status < 300 else {"error": "nope"}
        return CRMResponse(status_code=status, body=body)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def scorer():
    return FakeScorer()


@pytest.fixture
def crm():
    return FakeCRM(201)


@pytest.fixture
def directory():
    return InMemoryContactDirectory()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def pipeline(sender, scorer, crm, directory, bus, clock, sleeper):
    """In-memory pipeline with inline event delivery and no real waiting."""
    return LeadPipeline.in_memory(
        sender=sender,
        scorer=scorer,
        crm=crm,
        directory=directory,
        bus=bus,
        base_url="https://loans.test",
        clock=clock,
        external_timeout=1.0,
        submission_base_delay=1.0,
        sleep=sleeper,
    )


@pytest.fixture
def email():
    return "a@b.com"


@pytest.fixture
def email_hash(email):
    return hash_email(email)


@pytest.fixture
def engagement_metadata():
    return {"utm_source": "google", "form_name": "auto-loan", "vehicle_interest": "SUV"}


@pytest.fixture
def abandon(pipeline, directory, engagement_metadata):
    """Register an address and record a qualifying abandonment for it."""

    async def _abandon(email: str = "a@b.com", step: int = 3, session_id: str = "s-1", metadata=None):
        await directory.register(email)
        return await pipeline.detector.detect(
            session_id, email, step,
            metadata=engagement_metadata if metadata is None else metadata,
        )

    return _abandon


@pytest.fixture
def client(pipeline):
    """FastAPI test client wired to the in-memory pipeline."""
    from fastapi.testclient import TestClient
    from api.main import create_app
    from api.services import Services

    app = create_app(services=Services(pipeline=pipeline))
    with TestClient(app) as test_client:
        yield test_client
