"""
Dealer CRM webhook client for the Loan Lead Pipeline.

Returns the raw status code; the submitter decides what it means.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from lead_pipeline.capabilities import CRMResponse, CRMSubmitter
from lead_pipeline.errors import TransientExternalError

logger = logging.getLogger(__name__)


class HttpCRMSubmitter(CRMSubmitter):
    """Posts lead payloads to a dealer CRM webhook."""

    def __init__(
        self,
        webhook_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def submit(self, lead_payload: Dict[str, Any]) -> CRMResponse:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.webhook_url, json=lead_payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.webhook_url, json=lead_payload, headers=headers, timeout=self.timeout
                    )
        except httpx.TimeoutException:
            raise TransientExternalError("CRM webhook timed out")
        except httpx.HTTPError as e:
            raise TransientExternalError(f"CRM webhook unreachable: {e.__class__.__name__}")

        try:
            body = response.json()
        except ValueError:
            body = response.text[:500]

        if response.status_code >= 300:
            logger.error(
                f"CRM webhook returned {response.status_code} for lead {lead_payload.get('lead_id')}"
            )
        return CRMResponse(status_code=response.status_code, body=body)
