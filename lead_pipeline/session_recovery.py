"""
Session Recovery and Chat Handler for the Loan Lead Pipeline.

Redeems return tokens and captures a phone number from chat messages,
handing it to the credit stage via CreditCheckRequested.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .activity_log import ActivityLog
from .contact_extractor import ContactExtractor, mask_phone
from .errors import VisitorNotFound
from .events import CreditCheckRequested, EventBus
from .models import Visitor, utcnow
from .stores import TokenRejection, TokenStore, VisitorStore

logger = logging.getLogger(__name__)

STAGE = "session_recovery"

WELCOME_BACK_REPLY = (
    "Welcome back! Your application is saved. To check your pre-approval with a soft "
    "credit pull (no impact on your score), what's the best phone number to reach you?"
)
ASK_FOR_PHONE_REPLY = (
    "To check your pre-approval, could you share your mobile number? "
    "For example: (555) 123-4567."
)
PHONE_CAPTURED_REPLY = (
    "Thanks! We're running a quick soft credit check now. This won't affect your credit score."
)


@dataclass
class RedemptionResult:
    """Either the recovered visitor or the reason the token was refused."""
    visitor: Optional[Visitor] = None
    rejection: Optional[TokenRejection] = None

    @property
    def ok(self) -> bool:
        return self.visitor is not None and self.rejection is None


@dataclass
class ChatTurn:
    reply: str
    phone_number: Optional[str] = None

    @property
    def credit_check_requested(self) -> bool:
        return self.phone_number is not None


class SessionRecovery:
    """
    Handles visitors returning through a re-engagement link.

    Redemption relies on the token store's atomic consume, so concurrent
    redemptions of one token yield exactly one success.
    """

    def __init__(
        self,
        visitors: VisitorStore,
        tokens: TokenStore,
        bus: EventBus,
        activity: ActivityLog,
        extractor: Optional[ContactExtractor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.visitors = visitors
        self.tokens = tokens
        self.bus = bus
        self.activity = activity
        self.extractor = extractor or ContactExtractor()
        self._clock = clock

    async def redeem(self, token: str) -> RedemptionResult:
        now = self._clock()
        result = await self.tokens.consume(token or "", now)
        prefix = (token or "")[:8]

        if not result.ok:
            await self.activity.failure(
                STAGE, "token_rejected", None,
                token_prefix=prefix,
                reason=result.rejection.value,
            )
            logger.info(f"Return token {prefix}... rejected: {result.rejection.value}")
            return RedemptionResult(rejection=result.rejection)

        visitor = await self.visitors.update(result.token.visitor_id, last_activity_at=now)
        if visitor is None:
            # Token outlived its visitor; treat as unknown.
            await self.activity.failure(
                STAGE, "token_rejected", result.token.visitor_id,
                token_prefix=prefix,
                reason="visitor_not_found",
            )
            return RedemptionResult(rejection=TokenRejection.NOT_FOUND)

        await self.activity.success(STAGE, "token_redeemed", visitor.id, token_prefix=prefix)
        logger.info(f"Visitor {visitor.id} returned via token {prefix}...")
        return RedemptionResult(visitor=visitor)

    def extract_contact(self, free_text: str) -> Optional[str]:
        """Normalized E.164 phone number from free text, or None."""
        return self.extractor.extract_phone(free_text)

    async def handle_message(self, visitor_id: str, text: str) -> ChatTurn:
        """
        Process one chat message from a returning visitor.

        A message without a phone number is not an error; the conversation
        simply continues with a prompt for one.
        """
        phone = self.extract_contact(text)
        changes = {"last_activity_at": self._clock()}
        if phone is not None:
            changes["phone_number"] = phone

        if await self.visitors.update(visitor_id, **changes) is None:
            raise VisitorNotFound(visitor_id)

        if phone is None:
            await self.activity.skipped(STAGE, "no_contact_found", visitor_id)
            return ChatTurn(reply=ASK_FOR_PHONE_REPLY)

        await self.activity.success(STAGE, "phone_captured", visitor_id, phone=mask_phone(phone))
        logger.info(f"Captured phone {mask_phone(phone)} for visitor {visitor_id}")

        await self.bus.publish(CreditCheckRequested(visitor_id=visitor_id, phone_number=phone))
        return ChatTurn(reply=PHONE_CAPTURED_REPLY, phone_number=phone)
