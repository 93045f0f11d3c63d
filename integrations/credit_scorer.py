"""
HTTP credit scorer client for the Loan Lead Pipeline.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from lead_pipeline.capabilities import CreditScorer, ScoreResponse
from lead_pipeline.errors import TerminalExternalError, TransientExternalError, classify_status

logger = logging.getLogger(__name__)


class HttpCreditScorer(CreditScorer):
    """
    Soft credit pull over HTTP.

    Expects a JSON body with ``approved`` and ``score``, plus
    ``approvedAmount``/``rate`` when approved or ``reasons`` when declined.
    Both snake_case and camelCase keys are accepted.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def score(self, phone_number: str) -> ScoreResponse:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json={"phone": phone_number}, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.url, json={"phone": phone_number}, headers=headers, timeout=self.timeout
                    )
        except httpx.TimeoutException:
            raise TransientExternalError("Credit scorer timed out")
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Credit scorer unreachable: {e.__class__.__name__}")

        error = classify_status(response.status_code, f"Credit scorer returned {response.status_code}")
        if error is not None:
            raise error

        try:
            data = response.json()
        except ValueError:
            raise TerminalExternalError("Credit scorer returned a malformed body", response.status_code)
        return self._parse(data)

    @staticmethod
    def _parse(data: Dict[str, Any]) -> ScoreResponse:
        if not isinstance(data, dict) or "approved" not in data:
            raise TerminalExternalError("Credit scorer response missing 'approved'")

        approved = bool(data["approved"])
        score = data.get("score", data.get("creditScore"))
        amount = data.get("approved_amount", data.get("approvedAmount"))
        rate = data.get("rate")
        reasons = data.get("reasons", data.get("declineReasons")) or []
        try:
            return ScoreResponse(
                approved=approved,
                score=int(score) if score is not None else None,
                approved_amount=float(amount) if amount is not None else None,
                rate=float(rate) if rate is not None else None,
                reasons=[str(r) for r in reasons],
            )
        except (TypeError, ValueError):
            raise TerminalExternalError("Credit scorer returned a malformed score")
