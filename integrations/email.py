"""
Email Providers for the Loan Lead Pipeline.

Supports SendGrid (primary) and AWS SES (fallback).
"""

import asyncio
import logging
from typing import Optional

import httpx
from botocore.exceptions import BotoCoreError, ClientError

from lead_pipeline.capabilities import MessageSender, SendResult

logger = logging.getLogger(__name__)


class SendGridEmail(MessageSender):
    """Email via SendGrid API."""

    BASE_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "Loan Team",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout
        self._client = client

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {
            "personalizations": [{"to": [{"email": address}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.BASE_URL, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(self.BASE_URL, json=payload, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"SendGrid send failed: {e}")
            return SendResult(success=False, error="sendgrid_unavailable")

        success = resp.status_code in (200, 202)
        if not success:
            logger.error(f"SendGrid rejected message: HTTP {resp.status_code}")
        return SendResult(
            success=success,
            provider_message_id=resp.headers.get("X-Message-Id"),
            error=f"sendgrid_http_{resp.status_code}" if not success else None,
        )


class SESEmail(MessageSender):
    """Email via AWS SES."""

    def __init__(self, region: str = "us-east-1", from_email: str = "", client=None):
        self.region = region
        self.from_email = from_email
        self._client = client

    def _get_client(self):
        if not self._client:
            import boto3
            self._client = boto3.client("ses", region_name=self.region)
        return self._client

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        try:
            client = self._get_client()
            resp = await asyncio.to_thread(
                client.send_email,
                Source=self.from_email,
                Destination={"ToAddresses": [address]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
            return SendResult(success=True, provider_message_id=resp.get("MessageId"))
        except (BotoCoreError, ClientError) as e:
            logger.error(f"SES send failed: {e}")
            return SendResult(success=False, error="ses_unavailable")

    async def health_check(self) -> bool:
        try:
            client = self._get_client()
            await asyncio.to_thread(client.get_send_quota)
            return True
        except (BotoCoreError, ClientError):
            return False


class EmailRouter(MessageSender):
    """Routes emails through primary or fallback provider."""

    def __init__(self, primary: MessageSender, fallback: Optional[MessageSender] = None):
        self.primary = primary
        self.fallback = fallback

    async def send(self, address: str, subject: str, body: str) -> SendResult:
        result = await self.primary.send(address, subject, body)
        if not result.success and self.fallback:
            logger.warning("Primary email failed, trying fallback")
            result = await self.fallback.send(address, subject, body)
        return result
