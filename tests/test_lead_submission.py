"""Tests for lead packaging, CRM submission and dead-letter handling."""

import asyncio
import re
from datetime import datetime

import pytest

from lead_pipeline.errors import InvalidTransition, LeadNotFound, ValidationError
from lead_pipeline.events import LeadDeadLettered, LeadSubmitted
from lead_pipeline.lead_packaging import (
    MAX_SUBMISSION_ATTEMPTS,
    BackoffPolicy,
    generate_lead_id,
)
from lead_pipeline.models import CreditCheckResult, Lead, LeadStatus

START = datetime(2024, 1, 15, 12, 0, 0)


def approved_result(check_id: str = "cc-1", phone: str = "+15551234567") -> CreditCheckResult:
    return CreditCheckResult(
        id=check_id,
        phone_number=phone,
        approved=True,
        score=720,
        cached_at=START,
        approved_amount=30000.0,
        rate=5.9,
    )


@pytest.fixture
def packaged(pipeline, abandon):
    """Lead packaged for a visitor that abandoned, returned and was approved."""

    async def _packaged(check_id: str = "cc-1") -> Lead:
        visitor = await abandon(step=3)
        return await pipeline.packager.package(visitor.id, approved_result(check_id))

    return _packaged


# ── Backoff ───────────────────────────────────────────

class TestBackoffPolicy:
    def test_exponential(self):
        policy = BackoffPolicy(base_delay=1.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_capped(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=15.0)
        assert policy.delay_for(3) == 15.0


# ── Packaging ─────────────────────────────────────────

class TestLeadPackager:
    def test_lead_id_format(self):
        assert re.fullmatch(r"LD-[0-9A-F]{16}", generate_lead_id())

    @pytest.mark.asyncio
    async def test_snapshot_contents(self, packaged):
        lead = await packaged()
        assert lead.status == LeadStatus.PENDING
        data = lead.lead_data
        assert data["visitor"]["phone_number"] == "+15551234567"
        assert data["engagement"]["abandonment_step"] == 3
        assert data["engagement"]["messages_sent"] == 1
        assert data["engagement"]["tokens_issued"] == 1
        assert data["engagement"]["returned"] is False
        assert data["credit"]["score"] == 720
        assert data["credit"]["approved_amount"] == 30000.0
        assert data["metadata"]["utm_source"] == "google"
        assert data["metadata"]["lead_source"] == "abandonment_recovery"

    @pytest.mark.asyncio
    async def test_package_is_idempotent(self, pipeline, packaged):
        first = await packaged()
        second = await pipeline.packager.package(first.visitor_id, approved_result())
        assert second.id == first.id
        assert len(await pipeline.leads.list()) == 1

    @pytest.mark.asyncio
    async def test_snapshot_unaffected_by_later_visitor_changes(self, pipeline, packaged):
        lead = await packaged()
        visitor = await pipeline.visitors.get(lead.visitor_id)
        visitor.metadata["utm_source"] = "changed"
        visitor.phone_number = "+15559999999"
        await pipeline.visitors.save(visitor)

        stored = await pipeline.leads.get(lead.id)
        assert stored.lead_data["metadata"]["utm_source"] == "google"
        assert stored.lead_data["visitor"]["phone_number"] == "+15551234567"

    @pytest.mark.asyncio
    async def test_declined_result_rejected(self, pipeline, abandon):
        visitor = await abandon(step=3)
        declined = CreditCheckResult(
            id="cc-2", phone_number="+15551234567", approved=False, score=500, cached_at=START,
        )
        with pytest.raises(ValidationError):
            await pipeline.packager.package(visitor.id, declined)


# ── Submission ────────────────────────────────────────

class TestLeadSubmitter:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, pipeline, crm, bus, packaged):
        lead = await packaged()
        result = await pipeline.submitter.submit(lead)

        assert result.success
        assert result.attempts == 1
        assert result.external_reference == "ref-1"
        stored = await pipeline.leads.get(lead.id)
        assert stored.status == LeadStatus.SUBMITTED
        assert stored.submitted_at is not None
        assert crm.payloads[0]["lead_id"] == lead.id
        assert any(isinstance(e, LeadSubmitted) for e in bus.history)

    @pytest.mark.asyncio
    async def test_transient_then_success(self, pipeline, crm, sleeper, packaged):
        crm.statuses = [503, 201]
        lead = await packaged()
        result = await pipeline.submitter.submit(lead.id)

        assert result.success
        assert result.attempts == 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_exhausts_three_attempts_then_dead_letters(self, pipeline, crm, bus, sleeper, packaged):
        crm.statuses = [500]
        lead = await packaged()
        result = await pipeline.submitter.submit(lead.id)

        assert not result.success
        assert result.dead_lettered
        assert result.retryable
        assert crm.calls == MAX_SUBMISSION_ATTEMPTS == 3
        assert sleeper.delays == [1.0, 2.0]

        stored = await pipeline.leads.get(lead.id)
        assert stored.status == LeadStatus.DEAD_LETTERED
        assert stored.attempts == 3

        entries = await pipeline.dead_letters.list()
        assert [e.lead_id for e in entries] == [lead.id]
        assert entries[0].attempts == 3
        dead = [e for e in bus.history if isinstance(e, LeadDeadLettered)]
        assert dead[0].lead_id == lead.id

    @pytest.mark.asyncio
    async def test_client_error_stops_immediately(self, pipeline, crm, sleeper, packaged):
        crm.statuses = [422]
        lead = await packaged()
        result = await pipeline.submitter.submit(lead.id)

        assert not result.success
        assert not result.retryable
        assert result.attempts == 1
        assert crm.calls == 1
        assert sleeper.delays == []
        assert (await pipeline.leads.get(lead.id)).status == LeadStatus.FAILED
        assert await pipeline.dead_letters.list() == []

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, pipeline, crm, packaged):
        crm.delay = 0.2
        pipeline.submitter.timeout = 0.01
        lead = await packaged()
        result = await pipeline.submitter.submit(lead.id)
        assert result.dead_lettered
        assert crm.calls == 3

    @pytest.mark.asyncio
    async def test_submitted_lead_not_resent(self, pipeline, crm, packaged):
        lead = await packaged()
        await pipeline.submitter.submit(lead.id)
        again = await pipeline.submitter.submit(lead.id)
        assert again.success
        assert crm.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_submits_share_one_flight(self, pipeline, crm, packaged):
        lead = await packaged()
        crm.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(pipeline.submitter.submit(lead.id)) for _ in range(5)]
        await asyncio.sleep(0)
        assert pipeline.submitter.in_flight(lead.id)
        crm.gate.set()
        results = await asyncio.gather(*tasks)

        assert crm.calls == 1
        assert all(r.success for r in results)
        assert not pipeline.submitter.in_flight(lead.id)

    @pytest.mark.asyncio
    async def test_unknown_lead(self, pipeline):
        with pytest.raises(LeadNotFound):
            await pipeline.submitter.submit("LD-0000000000000000")

    @pytest.mark.asyncio
    async def test_payload_mutation_does_not_touch_lead(self, pipeline, crm, packaged):
        lead = await packaged()
        await pipeline.submitter.submit(lead.id)
        crm.payloads[0]["credit"]["score"] = 1
        assert (await pipeline.leads.get(lead.id)).lead_data["credit"]["score"] == 720


# ── Lifecycle ─────────────────────────────────────────

class TestLeadLifecycle:
    @pytest.mark.asyncio
    async def test_submitted_is_terminal(self, pipeline, packaged):
        lead = await packaged()
        await pipeline.submitter.submit(lead.id)
        stored = await pipeline.leads.get(lead.id)
        with pytest.raises(InvalidTransition):
            stored.transition(LeadStatus.PROCESSING)

    def test_pending_cannot_skip_to_submitted(self):
        lead = Lead(id="LD-1", visitor_id="v", credit_check_id="c", lead_data={})
        with pytest.raises(InvalidTransition):
            lead.transition(LeadStatus.SUBMITTED)


# ── Dead Letters ──────────────────────────────────────

class TestDeadLetterReprocessing:
    @pytest.mark.asyncio
    async def test_resubmit_resolves_entry(self, pipeline, crm, packaged):
        crm.statuses = [500, 500, 500, 201]
        lead = await packaged()
        assert (await pipeline.submitter.submit(lead.id)).dead_lettered

        result = await pipeline.reprocessor.run_once()
        assert result.attempted == 1
        assert result.submitted == 1

        stored = await pipeline.leads.get(lead.id)
        assert stored.status == LeadStatus.SUBMITTED
        assert stored.attempts == 4
        assert await pipeline.dead_letters.list() == []
        resolved = await pipeline.dead_letters.list(include_resolved=True)
        assert resolved[0].resolved_at is not None

    @pytest.mark.asyncio
    async def test_still_failing_stays_dead_lettered(self, pipeline, crm, packaged):
        crm.statuses = [500]
        lead = await packaged()
        await pipeline.submitter.submit(lead.id)

        result = await pipeline.reprocessor.run_once()
        assert result.failed == 1
        assert crm.calls == 6
        entries = await pipeline.dead_letters.list()
        assert entries[0].attempts == 6

    @pytest.mark.asyncio
    async def test_overlapping_run_skipped(self, pipeline):
        pipeline.reprocessor._running = True
        assert (await pipeline.reprocessor.run_once()).skipped

    @pytest.mark.asyncio
    async def test_empty_store(self, pipeline):
        result = await pipeline.reprocessor.run_once()
        assert result.attempted == 0




# ── Unexpected Errors ─────────────────────────────────

class TestUnexpectedSubmissionErrors:
    @pytest.mark.asyncio
    async def test_crash_leaves_dead_lettered_lead_resubmittable(self, pipeline, crm, packaged):
        crm.statuses = [500]
        lead = await packaged()
        assert (await pipeline.submitter.submit(lead.id)).dead_lettered

        crm.error = RuntimeError("adapter bug")
        result = await pipeline.submitter.submit(lead.id)
        assert not result.success
        assert result.status == LeadStatus.FAILED
        assert result.attempts == 1
        stored = await pipeline.leads.get(lead.id)
        assert stored.status == LeadStatus.FAILED
        assert stored.last_error == "Unexpected submission error: RuntimeError"

        crm.error = None
        crm.statuses = [201]
        assert (await pipeline.submitter.submit(lead.id)).success
        assert (await pipeline.leads.get(lead.id)).status == LeadStatus.SUBMITTED
        assert await pipeline.dead_letters.list() == []

    @pytest.mark.asyncio
    async def test_crash_recorded_in_activity(self, pipeline, crm, packaged):
        lead = await packaged()
        crm.error = ValueError("bad payload")
        await pipeline.submitter.submit(lead.id)

        records = await pipeline.activity.query(target_id=lead.id)
        assert records[-1].action == "submission_error"
        assert records[-1].metadata["error"] == "ValueError"

    @pytest.mark.asyncio
    async def test_crash_does_not_abort_reprocessing(self, pipeline, crm, packaged):
        crm.statuses = [500]
        for check_id in ("cc-1", "cc-2"):
            lead = await packaged(check_id)
            await pipeline.submitter.submit(lead.id)

        crm.error = RuntimeError("adapter bug")
        result = await pipeline.reprocessor.run_once()
        assert result.attempted == 2
        assert result.failed == 2

        crm.error = None
        crm.statuses = [201]
        result = await pipeline.reprocessor.run_once()
        assert result.submitted == 2
        assert await pipeline.dead_letters.list() == []

    @pytest.mark.asyncio
    async def test_interrupted_processing_is_recovered(self, pipeline, crm, packaged):
        lead = await packaged()
        lead.transition(LeadStatus.PROCESSING, START)
        await pipeline.leads.save(lead)

        result = await pipeline.submitter.submit(lead.id)
        assert result.success
        assert crm.calls == 1
