"""
Credit Evaluator for the Loan Lead Pipeline.

Soft credit pull behind a 5-minute cache keyed by normalized phone number.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .activity_log import ActivityLog
from .capabilities import CreditScorer
from .contact_extractor import mask_phone, normalize_phone
from .errors import ExternalError, InvalidPhone, TransientExternalError, VisitorNotFound
from .events import CreditApproved, CreditCheckRequested, CreditDeclined, EventBus
from .models import CreditCheckResult, CreditStatus, new_id, utcnow
from .stores import VisitorStore
from .ttl_cache import TTLCache
from . import metrics

logger = logging.getLogger(__name__)

STAGE = "credit_evaluator"

# A cached decision must never be served past this age.
CREDIT_CACHE_TTL = timedelta(minutes=5)


class CreditEvaluator:
    """
    Evaluates a visitor's credit by phone number.

    External failures propagate as TransientExternalError or
    TerminalExternalError and leave the cache untouched; the caller
    re-invokes rather than this stage retrying.
    """

    def __init__(
        self,
        visitors: VisitorStore,
        scorer: CreditScorer,
        bus: EventBus,
        activity: ActivityLog,
        cache: Optional[TTLCache[CreditCheckResult]] = None,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = 10.0,
    ):
        self.visitors = visitors
        self.scorer = scorer
        self.bus = bus
        self.activity = activity
        self._clock = clock
        self.cache = cache or TTLCache(CREDIT_CACHE_TTL, clock=clock, name="credit_cache")
        self.timeout = timeout

    async def handle_requested(self, event: CreditCheckRequested) -> None:
        await self.evaluate(event.phone_number, event.visitor_id)

    async def evaluate(self, phone_number: str, visitor_id: str) -> CreditCheckResult:
        phone = normalize_phone(phone_number or "")
        if phone is None:
            await self.activity.failure(STAGE, "invalid_phone", visitor_id)
            logger.warning(f"Invalid phone number for visitor {visitor_id}")
            raise InvalidPhone("Invalid phone number")

        visitor = await self.visitors.get(visitor_id)
        if visitor is None:
            raise VisitorNotFound(visitor_id)

        try:
            result, hit = await self.cache.get_or_compute(phone, lambda: self._score(phone))
        except ExternalError as e:
            await self.activity.failure(
                STAGE, "credit_check_failed", visitor_id,
                phone=mask_phone(phone),
                error=str(e),
                retryable=getattr(e, "retryable", False),
            )
            logger.error(f"Credit check failed for visitor {visitor_id}: {e}")
            raise

        metrics.record_cache_lookup(hit)

        status = CreditStatus.APPROVED if result.approved else CreditStatus.DECLINED
        if visitor.phone_number != phone or visitor.credit_status != status:
            await self.visitors.update(visitor_id, phone_number=phone, credit_status=status)

        await self.activity.success(
            STAGE, "credit_approved" if result.approved else "credit_declined", visitor_id,
            credit_check_id=result.id,
            phone=mask_phone(phone),
            score=result.score,
            cached=hit,
        )
        logger.info(
            f"Credit {'approved' if result.approved else 'declined'} for visitor {visitor_id} "
            f"(score={result.score}, cached={hit})"
        )

        if result.approved:
            await self.bus.publish(CreditApproved(visitor_id=visitor_id, result=result))
        else:
            await self.bus.publish(CreditDeclined(visitor_id=visitor_id, result=result))
        return result

    async def _score(self, phone: str) -> CreditCheckResult:
        try:
            response = await asyncio.wait_for(self.scorer.score(phone), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransientExternalError("Credit scorer timed out")

        return CreditCheckResult(
            id=new_id(),
            phone_number=phone,
            approved=response.approved,
            score=response.score,
            cached_at=self._clock(),
            approved_amount=response.approved_amount if response.approved else None,
            rate=response.rate if response.approved else None,
            decline_reasons=[] if response.approved else list(response.reasons),
        )
