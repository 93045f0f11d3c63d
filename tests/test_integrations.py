"""Tests for external provider adapters."""

import json

import httpx
import pytest
from botocore.exceptions import ClientError

from integrations import (
    EmailRouter,
    HttpCreditScorer,
    HttpCRMSubmitter,
    InMemoryContactDirectory,
    SendGridEmail,
    SESEmail,
)
from integrations.unconfigured import UnconfiguredCRM, UnconfiguredScorer, UnconfiguredSender
from lead_pipeline.capabilities import CRMResponse, SendResult
from lead_pipeline.contact_extractor import hash_email
from lead_pipeline.errors import InvalidEmail, TerminalExternalError, TransientExternalError


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def timing_out(request):
    raise httpx.ReadTimeout("slow", request=request)


# ── Credit Scorer ─────────────────────────────────────

class TestHttpCreditScorer:
    @pytest.mark.asyncio
    async def test_approved(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers.get("X-API-Key")
            return httpx.Response(200, json={"approved": True, "score": 712, "approvedAmount": 25000, "rate": 6.5})

        scorer = HttpCreditScorer("https://scorer.test/score", api_key="k", client=mock_client(handler))
        response = await scorer.score("+15551234567")

        assert seen == {"body": {"phone": "+15551234567"}, "key": "k"}
        assert response.approved
        assert response.score == 712
        assert response.approved_amount == 25000

    @pytest.mark.asyncio
    async def test_declined_with_reasons(self):
        def handler(request):
            return httpx.Response(200, json={"approved": False, "credit_score": None, "reasons": ["thin_file"]})

        scorer = HttpCreditScorer("https://scorer.test/score", client=mock_client(handler))
        response = await scorer.score("+15551234567")
        assert not response.approved
        assert response.reasons == ["thin_file"]

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        scorer = HttpCreditScorer(
            "https://scorer.test/score", client=mock_client(lambda r: httpx.Response(503))
        )
        with pytest.raises(TransientExternalError) as exc:
            await scorer.score("+15551234567")
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        scorer = HttpCreditScorer(
            "https://scorer.test/score", client=mock_client(lambda r: httpx.Response(400))
        )
        with pytest.raises(TerminalExternalError):
            await scorer.score("+15551234567")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        scorer = HttpCreditScorer("https://scorer.test/score", client=mock_client(timing_out))
        with pytest.raises(TransientExternalError):
            await scorer.score("+15551234567")

    @pytest.mark.asyncio
    async def test_malformed_body_is_terminal(self):
        scorer = HttpCreditScorer(
            "https://scorer.test/score", client=mock_client(lambda r: httpx.Response(200, json={"score": 1}))
        )
        with pytest.raises(TerminalExternalError):
            await scorer.score("+15551234567")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"approved": True, "score": "excellent"},
        {"approved": True, "score": 700, "approvedAmount": "lots"},
        {"approved": True, "score": 700, "rate": [6.5]},
    ])
    async def test_non_numeric_fields_are_terminal(self, body):
        scorer = HttpCreditScorer(
            "https://scorer.test/score", client=mock_client(lambda r: httpx.Response(200, json=body))
        )
        with pytest.raises(TerminalExternalError, match="malformed score"):
            await scorer.score("+15551234567")

    @pytest.mark.asyncio
    async def test_malformed_score_recorded_by_evaluator(self, pipeline):
        visitor = await pipeline.detector.register("s-1", "a@b.com", 2)
        pipeline.evaluator.scorer = HttpCreditScorer(
            "https://scorer.test/score",
            client=mock_client(lambda r: httpx.Response(200, json={"approved": True, "score": "n/a"})),
        )
        with pytest.raises(TerminalExternalError):
            await pipeline.evaluator.evaluate("+15551234567", visitor.id)

        records = await pipeline.activity.query(target_id=visitor.id)
        assert records[-1].action == "credit_check_failed"
        assert records[-1].metadata["retryable"] is False


# ── CRM ───────────────────────────────────────────────

class TestHttpCRMSubmitter:
    @pytest.mark.asyncio
    async def test_returns_status_and_reference(self):
        def handler(request):
            return httpx.Response(201, json={"data": [{"id": "crm-42"}]})

        crm = HttpCRMSubmitter("https://crm.test/hook", client=mock_client(handler))
        response = await crm.submit({"lead_id": "LD-1"})
        assert response.status_code == 201
        assert response.reference == "crm-42"

    @pytest.mark.asyncio
    async def test_error_status_returned_not_raised(self):
        crm = HttpCRMSubmitter(
            "https://crm.test/hook", client=mock_client(lambda r: httpx.Response(500, text="oops"))
        )
        response = await crm.submit({"lead_id": "LD-1"})
        assert response.status_code == 500
        assert response.body == "oops"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        crm = HttpCRMSubmitter("https://crm.test/hook", client=mock_client(timing_out))
        with pytest.raises(TransientExternalError):
            await crm.submit({"lead_id": "LD-1"})

    @pytest.mark.parametrize("body,expected", [
        ({"leadReference": "a"}, "a"),
        ({"lead_id": "b"}, "b"),
        ({"id": 7}, "7"),
        ({"data": []}, None),
        ("plain text", None),
    ])
    def test_reference_keys(self, body, expected):
        assert CRMResponse(status_code=200, body=body).reference == expected


# ── Email ─────────────────────────────────────────────

class FakeSES:
    def __init__(self, error: bool = False):
        self.error = error
        self.sent = []

    def send_email(self, **kwargs):
        if self.error:
            raise ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "SendEmail")
        self.sent.append(kwargs)
        return {"MessageId": "ses-1"}


class TestEmail:
    @pytest.mark.asyncio
    async def test_sendgrid_success(self):
        seen = {}

        def handler(request):
            seen["payload"] = json.loads(request.content)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(202, headers={"X-Message-Id": "sg-1"})

        email = SendGridEmail("key", "from@loans.test", client=mock_client(handler))
        result = await email.send("a@b.com", "Subject", "Body")

        assert result.success
        assert result.provider_message_id == "sg-1"
        assert seen["auth"] == "Bearer key"
        assert seen["payload"]["personalizations"][0]["to"][0]["email"] == "a@b.com"
        assert seen["payload"]["content"][0] == {"type": "text/plain", "value": "Body"}

    @pytest.mark.asyncio
    async def test_sendgrid_rejection(self):
        email = SendGridEmail("key", "from@loans.test", client=mock_client(lambda r: httpx.Response(401)))
        result = await email.send("a@b.com", "Subject", "Body")
        assert not result.success
        assert result.error == "sendgrid_http_401"

    @pytest.mark.asyncio
    async def test_sendgrid_unreachable(self):
        email = SendGridEmail("key", "from@loans.test", client=mock_client(timing_out))
        result = await email.send("a@b.com", "Subject", "Body")
        assert result.error == "sendgrid_unavailable"

    @pytest.mark.asyncio
    async def test_ses(self):
        client = FakeSES()
        result = await SESEmail(from_email="from@loans.test", client=client).send("a@b.com", "S", "B")
        assert result.success
        assert result.provider_message_id == "ses-1"
        assert client.sent[0]["Destination"] == {"ToAddresses": ["a@b.com"]}

    @pytest.mark.asyncio
    async def test_ses_error(self):
        result = await SESEmail(client=FakeSES(error=True)).send("a@b.com", "S", "B")
        assert not result.success
        assert result.error == "ses_unavailable"

    @pytest.mark.asyncio
    async def test_router_falls_back(self):
        primary = SendGridEmail("key", "from@loans.test", client=mock_client(lambda r: httpx.Response(500)))
        router = EmailRouter(primary, SESEmail(client=FakeSES()))
        result = await router.send("a@b.com", "S", "B")
        assert result.success
        assert result.provider_message_id == "ses-1"


# ── Contact Directory ─────────────────────────────────

class TestContactDirectory:
    @pytest.mark.asyncio
    async def test_register_and_resolve(self):
        directory = InMemoryContactDirectory()
        email_hash = await directory.register(" A@B.com ")
        assert email_hash == hash_email("a@b.com")
        assert await directory.resolve(email_hash) == "a@b.com"
        assert await directory.resolve("unknown") is None

    @pytest.mark.asyncio
    async def test_rejects_invalid(self):
        with pytest.raises(InvalidEmail):
            await InMemoryContactDirectory().register("nope")


# ── Unconfigured Providers ────────────────────────────

class TestUnconfigured:
    @pytest.mark.asyncio
    async def test_sender_fails_softly(self):
        result = await UnconfiguredSender().send("a@b.com", "S", "B")
        assert result == SendResult(success=False, error="email_not_configured")

    @pytest.mark.asyncio
    async def test_scorer_is_transient(self):
        with pytest.raises(TransientExternalError):
            await UnconfiguredScorer().score("+15551234567")

    @pytest.mark.asyncio
    async def test_crm_reports_unavailable(self):
        response = await UnconfiguredCRM().submit({"lead_id": "LD-1"})
        assert response.status_code == 503
