"""Tests for the HTTP API."""

import re

import pytest

from api.services import Services
from config.settings import Settings
from lead_pipeline.contact_extractor import hash_email
from lead_pipeline.errors import TransientExternalError
from lead_pipeline.session_recovery import PHONE_CAPTURED_REPLY, WELCOME_BACK_REPLY

LINK_INVALID = "This link is no longer valid. Please request a new one."

ABANDONMENT = {
    "session_id": "s-1",
    "email": "a@b.com",
    "step": 3,
    "metadata": {"utm_source": "google", "form_name": "auto-loan"},
}


def token_from(sender) -> str:
    return re.search(r"/return/([\w-]+)", sender.sent[-1]["body"]).group(1)


def abandon_and_return(client, sender) -> dict:
    assert client.post("/api/v1/events/abandonment", json=ABANDONMENT).status_code == 202
    response = client.get(f"/api/v1/return/{token_from(sender)}")
    assert response.status_code == 200
    return response.json()


# ── Health ────────────────────────────────────────────

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["services"]["storage"] == "memory"


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "operational"


def test_metrics(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "lead_pipeline_http_requests_total" in response.text


# ── Events ────────────────────────────────────────────

class TestEventRoutes:
    def test_abandonment_accepted_and_processed(self, client, pipeline, sender):
        response = client.post("/api/v1/events/abandonment", json=ABANDONMENT)
        assert response.status_code == 202
        assert response.json() == {"status": "accepted"}
        assert len(pipeline.visitors) == 1
        assert sender.sent[0]["address"] == "a@b.com"

    def test_invalid_email_rejected(self, client, pipeline):
        response = client.post("/api/v1/events/abandonment", json={**ABANDONMENT, "email": "nope"})
        assert response.status_code == 400
        assert len(pipeline.visitors) == 0

    def test_missing_step_rejected(self, client):
        payload = {k: v for k, v in ABANDONMENT.items() if k != "step"}
        assert client.post("/api/v1/events/abandonment", json=payload).status_code == 400

    def test_hash_only_event_sends_nothing(self, client, pipeline, sender):
        payload = {**ABANDONMENT, "email": hash_email("a@b.com")}
        assert client.post("/api/v1/events/abandonment", json=payload).status_code == 202
        assert len(pipeline.visitors) == 1
        assert sender.sent == []

    def test_register_visitor(self, client, sender):
        response = client.post(
            "/api/v1/visitors/register", json={"session_id": "s-1", "email": "a@b.com", "step": 2}
        )
        assert response.status_code == 200
        assert response.json()["abandonment_step"] == 2
        assert sender.sent == []

    def test_register_invalid(self, client):
        response = client.post("/api/v1/visitors/register", json={"session_id": "s-1", "email": "bad"})
        assert response.status_code == 400

    def test_manual_reengage_reuses_token(self, client, sender):
        visitor_id = client.post(
            "/api/v1/visitors/register", json={"session_id": "s-1", "email": "a@b.com", "step": 2}
        ).json()["visitor_id"]

        first = client.post(f"/api/v1/visitors/{visitor_id}/reengage")
        assert first.status_code == 200
        assert first.json()["reused_token"] is False

        second = client.post(f"/api/v1/visitors/{visitor_id}/reengage")
        assert second.json()["reused_token"] is True
        assert second.json()["expires_at"] == first.json()["expires_at"]
        assert len(sender.sent) == 2

    def test_reengage_unknown_visitor(self, client):
        assert client.post("/api/v1/visitors/missing/reengage").status_code == 404

    def test_reengage_send_failure(self, client, sender):
        sender.fail_with = "provider_down"
        visitor_id = client.post(
            "/api/v1/visitors/register", json={"session_id": "s-1", "email": "a@b.com", "step": 2}
        ).json()["visitor_id"]
        response = client.post(f"/api/v1/visitors/{visitor_id}/reengage")
        assert response.status_code == 502
        assert "provider_down" not in response.text


# ── Recovery ──────────────────────────────────────────

class TestRecoveryRoutes:
    def test_return_link(self, client, sender):
        data = abandon_and_return(client, sender)
        assert data["reply"] == WELCOME_BACK_REPLY
        assert data["abandonment_step"] == 3
        assert data["phone_on_file"] is False

    def test_return_link_single_use(self, client, sender):
        abandon_and_return(client, sender)
        response = client.get(f"/api/v1/return/{token_from(sender)}")
        assert response.status_code == 410
        assert response.json()["detail"] == LINK_INVALID

    def test_expired_link(self, client, sender, clock):
        client.post("/api/v1/events/abandonment", json=ABANDONMENT)
        clock.advance(hours=24, seconds=1)
        response = client.get(f"/api/v1/return/{token_from(sender)}")
        assert response.status_code == 410
        assert response.json()["detail"] == LINK_INVALID

    def test_unknown_link_reads_the_same(self, client):
        response = client.get("/api/v1/return/not-a-token")
        assert response.status_code == 404
        assert response.json()["detail"] == LINK_INVALID

    def test_chat_captures_phone_and_submits_lead(self, client, sender, crm):
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        response = client.post("/api/v1/chat", json={"visitor_id": visitor_id, "message": "555-123-4567"})
        assert response.status_code == 200
        assert response.json() == {"reply": PHONE_CAPTURED_REPLY, "credit_check_requested": True}

        leads = client.get("/api/v1/leads").json()
        assert leads["total"] == 1
        assert leads["leads"][0]["status"] == "submitted"
        assert crm.calls == 1

    def test_chat_without_phone(self, client, sender):
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        response = client.post("/api/v1/chat", json={"visitor_id": visitor_id, "message": "hello"})
        assert response.json()["credit_check_requested"] is False

    def test_chat_unknown_visitor(self, client):
        response = client.post("/api/v1/chat", json={"visitor_id": "missing", "message": "555-123-4567"})
        assert response.status_code == 404

    def test_chat_empty_message(self, client):
        response = client.post("/api/v1/chat", json={"visitor_id": "v", "message": ""})
        assert response.status_code == 422


# ── Leads ─────────────────────────────────────────────

class TestLeadRoutes:
    def _dead_lettered_lead(self, client, sender, crm) -> str:
        crm.statuses = [500, 500, 500, 201]
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        client.post("/api/v1/chat", json={"visitor_id": visitor_id, "message": "555-123-4567"})
        return client.get("/api/v1/leads", params={"status": "dead_lettered"}).json()["leads"][0]["id"]

    def test_unknown_status(self, client):
        assert client.get("/api/v1/leads", params={"status": "bogus"}).status_code == 400

    def test_unknown_lead(self, client):
        assert client.get("/api/v1/leads/LD-0000000000000000").status_code == 404
        assert client.post("/api/v1/leads/LD-0000000000000000/submit").status_code == 404

    def test_dead_letter_listing_and_manual_resubmit(self, client, sender, crm):
        lead_id = self._dead_lettered_lead(client, sender, crm)

        entries = client.get("/api/v1/dead-letters").json()
        assert entries["total"] == 1
        assert entries["dead_letters"][0]["attempts"] == 3

        result = client.post(f"/api/v1/leads/{lead_id}/submit").json()
        assert result["success"] is True
        assert result["status"] == "submitted"

        assert client.get("/api/v1/dead-letters").json()["total"] == 0
        assert client.get("/api/v1/dead-letters", params={"include_resolved": True}).json()["total"] == 1
        assert client.get(f"/api/v1/leads/{lead_id}").json()["attempts"] == 4

    def test_resubmit_after_unexpected_error(self, client, sender, crm):
        crm.error = RuntimeError("adapter bug")
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        client.post("/api/v1/chat", json={"visitor_id": visitor_id, "message": "555-123-4567"})
        lead = client.get("/api/v1/leads").json()["leads"][0]
        assert lead["status"] == "failed"

        crm.error = None
        response = client.post(f"/api/v1/leads/{lead['id']}/submit")
        assert response.status_code == 200
        assert response.json()["status"] == "submitted"

    def test_reprocess_endpoint(self, client, sender, crm):
        self._dead_lettered_lead(client, sender, crm)
        response = client.post("/api/v1/dead-letters/reprocess")
        assert response.status_code == 200
        assert response.json() == {"attempted": 1, "submitted": 1, "failed": 0, "skipped": False}

    def test_reprocess_conflict(self, client, pipeline):
        pipeline.reprocessor._running = True
        assert client.post("/api/v1/dead-letters/reprocess").status_code == 409


# ── Activity ──────────────────────────────────────────

class TestActivityRoutes:
    def test_filter_by_stage(self, client, sender):
        abandon_and_return(client, sender)
        records = client.get("/api/v1/activity", params={"stage": "session_recovery"}).json()["records"]
        assert [r["action"] for r in records] == ["token_redeemed"]

    def test_filter_by_target(self, client, sender):
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        records = client.get("/api/v1/activity", params={"target_id": visitor_id}).json()["records"]
        assert records
        assert all(r["target_id"] == visitor_id for r in records)


# ── Event Replay ──────────────────────────────────────

class TestEventReplay:
    def test_replay_route_redelivers_failed_events(self, client, sender, scorer):
        scorer.error = TransientExternalError("scorer down")
        visitor_id = abandon_and_return(client, sender)["visitor_id"]
        client.post("/api/v1/chat", json={"visitor_id": visitor_id, "message": "555-123-4567"})
        assert client.get("/api/v1/leads").json()["total"] == 0

        scorer.error = None
        response = client.post("/api/v1/events/replay")
        assert response.status_code == 200
        assert response.json() == {"pending": 1, "delivered": 1, "remaining": 0}
        assert client.get("/api/v1/leads").json()["leads"][0]["status"] == "submitted"

    @pytest.mark.asyncio
    async def test_replay_job_scheduled_with_services(self, pipeline):
        services = Services(settings=Settings(event_replay_interval_seconds=30), pipeline=pipeline)
        services.start_jobs()
        try:
            jobs = services.health()["jobs"]
            assert jobs["event_replay"] is True
            assert jobs["abandonment_sweep"] is False
        finally:
            await services.shutdown()
        assert services.health()["jobs"]["event_replay"] is False
