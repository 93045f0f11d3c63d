"""
Abandonment Detector for the Loan Lead Pipeline.

Turns abandonment signals (explicit events or inactivity) into Visitor
records and emits LeadReady for visitors who meaningfully engaged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .activity_log import ActivityLog
from .concurrency import KeyedLocks
from .contact_extractor import hash_email, is_email_hash, is_valid_email
from .errors import InvalidEmail, MissingField, ValidationError
from .events import EventBus, LeadReady
from .models import Visitor, new_id, utcnow
from .stores import VisitorStore

logger = logging.getLogger(__name__)

STAGE = "abandonment_detector"

# Abandoning at step 1 is a bounce; only step 2 onwards qualifies.
MIN_QUALIFYING_STEP = 2

# Engagement metadata kept on a visitor; everything else is dropped.
ALLOWED_METADATA_KEYS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "referrer",
    "landing_page",
    "device",
    "form_name",
    "vehicle_interest",
    "loan_amount_requested",
    "time_on_page_seconds",
    "ad_click_ts",
    "form_start_ts",
}


def filter_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only whitelisted, non-empty engagement keys."""
    if not metadata:
        return {}
    return {
        k: v for k, v in metadata.items()
        if k in ALLOWED_METADATA_KEYS and v not in (None, "", [], {})
    }


def is_qualified(visitor: Visitor) -> bool:
    """Abandoned, past the first step, and carrying engagement metadata."""
    return (
        visitor.abandoned
        and visitor.abandonment_step >= MIN_QUALIFYING_STEP
        and bool(visitor.metadata)
    )


@dataclass
class SweepResult:
    visitors_processed: int = 0
    lead_ready_emitted: int = 0
    skipped: bool = False


class AbandonmentDetector:
    """
    Creates or updates the single Visitor for an email hash.

    The raw email is hashed on entry and never stored or logged. The latest
    observed step always overwrites the stored one, since later funnel steps
    supersede earlier ones.
    """

    def __init__(
        self,
        visitors: VisitorStore,
        bus: EventBus,
        activity: ActivityLog,
        clock: Callable[[], datetime] = utcnow,
        inactivity_threshold: timedelta = timedelta(minutes=30),
    ):
        self.visitors = visitors
        self.bus = bus
        self.activity = activity
        self._clock = clock
        self.inactivity_threshold = inactivity_threshold
        self._locks = KeyedLocks()
        self._sweeping = False

    async def detect(
        self,
        session_id: str,
        email_or_hash: str,
        step: int,
        observed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Visitor:
        """Record an abandonment signal; emits LeadReady if the visitor qualifies."""
        return await self._observe(
            "abandonment_detected", session_id, email_or_hash, step, observed_at, metadata,
            abandoned=True,
        )

    async def register(
        self,
        session_id: str,
        email_or_hash: str,
        step: int = 1,
        observed_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Visitor:
        """Record an explicit registration. Does not mark the visitor abandoned."""
        return await self._observe(
            "visitor_registered", session_id, email_or_hash, step, observed_at, metadata,
            abandoned=False,
        )

    async def _observe(
        self,
        action: str,
        session_id: str,
        email_or_hash: str,
        step: int,
        observed_at: Optional[datetime],
        metadata: Optional[Dict[str, Any]],
        abandoned: bool,
    ) -> Visitor:
        email_hash = await self.validate_signal(session_id, email_or_hash, step, action)

        observed_at = observed_at or self._clock()
        clean_metadata = filter_metadata(metadata)

        async with self._locks.hold(email_hash):
            visitor, created = await self.visitors.get_or_create(Visitor(
                id=new_id(),
                email_hash=email_hash,
                session_id=session_id,
                last_activity_at=observed_at,
                abandonment_step=step,
                abandoned=abandoned,
                metadata=clean_metadata,
            ))
            if not created:
                merged = {**visitor.metadata, **clean_metadata}
                visitor = await self.visitors.update(
                    visitor.id,
                    session_id=session_id,
                    last_activity_at=observed_at,
                    abandonment_step=step,
                    abandoned=visitor.abandoned or abandoned,
                    metadata=merged,
                )

        qualified = is_qualified(visitor)
        await self.activity.success(
            STAGE, action, visitor.id,
            created=created,
            step=step,
            session_id=session_id,
            qualified=qualified,
        )
        logger.info(
            f"Visitor {'created' if created else 'updated'}: {visitor.id} "
            f"(step={step}, qualified={qualified})"
        )

        if qualified:
            await self.bus.publish(LeadReady(visitor_id=visitor.id, abandonment_step=visitor.abandonment_step))
        return visitor

    async def validate_signal(
        self,
        session_id: str,
        email_or_hash: str,
        step: int,
        action: str = "abandonment_detected",
    ) -> str:
        """Email hash for a well-formed signal; a malformed one is recorded as failed and raised."""
        try:
            return self._validate(session_id, email_or_hash, step)
        except ValidationError as e:
            await self.activity.failure(STAGE, action, session_id or None, error=str(e))
            logger.warning(f"Rejected {action} event for session {session_id}: {e}")
            raise

    @staticmethod
    def _validate(session_id: str, email_or_hash: str, step: int) -> str:
        if not session_id:
            raise MissingField("session_id")
        if not email_or_hash:
            raise MissingField("email")
        if step is None:
            raise MissingField("step")
        if isinstance(step, bool) or not isinstance(step, int) or step < 1:
            raise ValidationError(f"Invalid abandonment step: {step!r}")

        value = email_or_hash.strip()
        if is_email_hash(value):
            return value
        if not is_valid_email(value):
            raise InvalidEmail("Invalid email address")
        return hash_email(value)

    async def sweep(self) -> SweepResult:
        """
        Mark visitors inactive past the threshold as abandoned.

        Overlapping runs are skipped rather than queued.
        """
        if self._sweeping:
            logger.warning("Abandonment sweep already running, skipping")
            return SweepResult(skipped=True)

        self._sweeping = True
        result = SweepResult()
        try:
            cutoff = self._clock() - self.inactivity_threshold
            for visitor in await self.visitors.list_inactive(cutoff):
                result.visitors_processed += 1
                async with self._locks.hold(visitor.email_hash):
                    current = await self.visitors.get(visitor.id)
                    if current is None or current.abandoned:
                        continue
                    current = await self.visitors.update(current.id, abandoned=True)
                    if current is None:
                        continue

                qualified = is_qualified(current)
                await self.activity.success(
                    STAGE, "inactivity_abandonment", current.id,
                    step=current.abandonment_step,
                    qualified=qualified,
                )
                if qualified:
                    await self.bus.publish(
                        LeadReady(visitor_id=current.id, abandonment_step=current.abandonment_step)
                    )
                    result.lead_ready_emitted += 1

            logger.info(
                f"Abandonment sweep finished: {result.visitors_processed} processed, "
                f"{result.lead_ready_emitted} lead_ready"
            )
            return result
        finally:
            self._sweeping = False
