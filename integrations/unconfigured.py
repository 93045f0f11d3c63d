"""
Stand-ins used when a provider has no credentials configured.

Each one fails the way the real provider would when unreachable, so the
pipeline's normal failure handling applies.
"""

import logging
from typing import Any, Dict

from lead_pipeline.capabilities import CRMResponse, CRMSubmitter, CreditScorer, MessageSender, ScoreResponse, SendResult
from lead_pipeline.errors import TransientExternalError

logger = logging.getLogger(__name__)


class UnconfiguredSender(MessageSender):
    async def send(self, address: str, subject: str, body: str) -> SendResult:
        logger.warning("No email provider configured, message not sent")
        return SendResult(success=False, error="email_not_configured")

    async def health_check(self) -> bool:
        return False


class UnconfiguredScorer(CreditScorer):
    async def score(self, phone_number: str) -> ScoreResponse:
        logger.warning("CREDIT_SCORER_URL not set, credit check unavailable")
        raise TransientExternalError("Credit scorer not configured")


class UnconfiguredCRM(CRMSubmitter):
    """Leads end up dead-lettered and are picked up once a webhook is configured."""

    async def submit(self, lead_payload: Dict[str, Any]) -> CRMResponse:
        logger.warning(f"CRM_URL not set, lead {lead_payload.get('lead_id')} not delivered")
        return CRMResponse(status_code=503, body={"error": "crm_not_configured"})
