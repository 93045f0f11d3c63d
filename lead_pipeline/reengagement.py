"""
Re-engagement Dispatcher for the Loan Lead Pipeline.

Consumes LeadReady: issues a single-use return token with a fixed 24-hour
expiry, renders the step-specific message and sends it.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from .activity_log import ActivityLog
from .capabilities import ContactDirectory, MessageSender, SendResult
from .concurrency import KeyedLocks
from .errors import ExternalError, VisitorNotFound
from .events import EventBus, MessageSent
from .models import ReturnToken, Visitor, utcnow
from .stores import TokenStore, VisitorStore

logger = logging.getLogger(__name__)

STAGE = "reengagement_dispatcher"

# Security boundary, not a tunable.
RETURN_TOKEN_TTL = timedelta(hours=24)
TOKEN_BYTES = 32  # 256 bits of entropy

RETURN_LINK_PLACEHOLDER = "{return_link}"

STEP_MESSAGES: Dict[int, Tuple[str, str]] = {
    1: (
        "Complete your car loan application",
        "Hi there,\n\n"
        "You started your car loan application but didn't get to finish. "
        "We've saved your progress, so picking up where you left off only takes a couple of minutes.\n\n"
        "Continue your application: {return_link}\n\n"
        "This link expires in 24 hours for your security.\n",
    ),
    2: (
        "Your car loan application is almost ready",
        "Hi there,\n\n"
        "You're close to the finish line. We have most of your details and just need a few more "
        "to complete your application. Our pre-approval uses a soft credit pull, so there's no "
        "impact on your credit score.\n\n"
        "Continue your application: {return_link}\n\n"
        "This link expires in 24 hours for your security.\n",
    ),
    3: (
        "One last step on your car loan application",
        "Hi there,\n\n"
        "You're on the final step of your application. Finish now and we'll get you a decision "
        "right away.\n\n"
        "Finish your application: {return_link}\n\n"
        "This secure link expires in 24 hours.\n",
    ),
}


def render_message(step: int, return_url: str) -> Tuple[str, str]:
    """Deterministic subject/body for an abandonment step."""
    key = min(max(step, 1), max(STEP_MESSAGES))
    subject, body = STEP_MESSAGES[key]
    return subject, body.replace(RETURN_LINK_PLACEHOLDER, return_url)


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


@dataclass
class DispatchResult:
    """Outcome of a dispatch. The token stays valid even when sending failed."""
    success: bool
    token: str
    expires_at: datetime
    reused: bool = False
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class ReengagementDispatcher:
    """
    Issues return tokens and sends re-engagement messages.

    Re-dispatching for an unchanged abandonment step reuses the visitor's
    live token, so its expiry is never pushed out. The caller decides
    whether to retry a failed send.
    """

    def __init__(
        self,
        visitors: VisitorStore,
        tokens: TokenStore,
        sender: MessageSender,
        directory: ContactDirectory,
        bus: EventBus,
        activity: ActivityLog,
        base_url: str,
        clock: Callable[[], datetime] = utcnow,
        send_timeout: float = 10.0,
    ):
        self.visitors = visitors
        self.tokens = tokens
        self.sender = sender
        self.directory = directory
        self.bus = bus
        self.activity = activity
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self.send_timeout = send_timeout
        self._locks = KeyedLocks()

    def return_url(self, token: str) -> str:
        return f"{self.base_url}/return/{token}"

    async def dispatch(self, visitor_id: str) -> DispatchResult:
        visitor = await self.visitors.get(visitor_id)
        if visitor is None:
            await self.activity.failure(STAGE, "dispatch", visitor_id, error="visitor_not_found")
            raise VisitorNotFound(visitor_id)

        async with self._locks.hold(visitor_id):
            token, reused = await self._token_for(visitor)
            subject, body = render_message(visitor.abandonment_step, self.return_url(token.token))
            result = await self._send(visitor, token, subject, body)

        if not result.success:
            await self.activity.failure(
                STAGE, "message_send_failed", visitor_id,
                token_prefix=token.token[:8],
                reused_token=reused,
                error=result.error,
            )
            logger.warning(f"Re-engagement send failed for visitor {visitor_id}: {result.error}")
            return DispatchResult(
                success=False,
                token=token.token,
                expires_at=token.expires_at,
                reused=reused,
                error=result.error,
            )

        token.message_sent = True
        token.provider_message_id = result.provider_message_id
        await self.tokens.save(token)

        await self.activity.success(
            STAGE, "message_sent", visitor_id,
            token_prefix=token.token[:8],
            reused_token=reused,
            step=visitor.abandonment_step,
            expires_at=token.expires_at.isoformat(),
            provider_message_id=result.provider_message_id,
        )
        logger.info(f"Re-engagement message sent for visitor {visitor_id}")

        await self.bus.publish(MessageSent(
            visitor_id=visitor_id,
            token_expires_at=token.expires_at,
            provider_message_id=result.provider_message_id,
        ))
        return DispatchResult(
            success=True,
            token=token.token,
            expires_at=token.expires_at,
            reused=reused,
            provider_message_id=result.provider_message_id,
        )

    async def _token_for(self, visitor: Visitor) -> Tuple[ReturnToken, bool]:
        now = self._clock()
        for existing in reversed(await self.tokens.list_for_visitor(visitor.id)):
            if existing.abandonment_step == visitor.abandonment_step and existing.is_redeemable(now):
                return existing, True

        token = ReturnToken(
            token=generate_token(),
            visitor_id=visitor.id,
            issued_at=now,
            expires_at=now + RETURN_TOKEN_TTL,
            abandonment_step=visitor.abandonment_step,
        )
        await self.tokens.create(token)
        await self.activity.success(
            STAGE, "token_issued", visitor.id,
            token_prefix=token.token[:8],
            expires_at=token.expires_at.isoformat(),
        )
        return token, False

    async def _send(self, visitor: Visitor, token: ReturnToken, subject: str, body: str):
        address = await self.directory.resolve(visitor.email_hash)
        if not address:
            return SendResult(success=False, error="no_deliverable_address")
        try:
            return await asyncio.wait_for(
                self.sender.send(address, subject, body), timeout=self.send_timeout
            )
        except asyncio.TimeoutError:
            return SendResult(success=False, error="send_timeout")
        except ExternalError as e:
            return SendResult(success=False, error=str(e))
