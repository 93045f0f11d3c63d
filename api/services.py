"""
Service initialization and dependency injection for the Loan Lead Pipeline API.

Creates and manages the pipeline, its stores, integrations and periodic jobs.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import Request

from config.settings import get_settings, Settings
from integrations import EmailRouter, HttpCreditScorer, HttpCRMSubmitter, InMemoryContactDirectory, SendGridEmail, SESEmail
from integrations.unconfigured import UnconfiguredCRM, UnconfiguredScorer, UnconfiguredSender
from lead_pipeline import EventBus, LeadPipeline, MessageSender, PeriodicJob

logger = logging.getLogger(__name__)


class Services:
    """Container for all application services."""

    def __init__(self, settings: Optional[Settings] = None, pipeline: Optional[LeadPipeline] = None):
        self.settings: Optional[Settings] = settings
        self.pipeline: Optional[LeadPipeline] = pipeline
        self.jobs: List[PeriodicJob] = []
        self.storage = "memory"
        self._initialized = pipeline is not None

    def initialize(self):
        """Initialize all services."""
        if self._initialized:
            return

        self.settings = self.settings or get_settings()
        s = self.settings
        logger.info(f"Initializing services (event delivery: {s.event_delivery})")

        self.pipeline = LeadPipeline(
            **self._build_stores(),
            sender=self._build_sender(),
            scorer=self._build_scorer(),
            crm=self._build_crm(),
            directory=InMemoryContactDirectory(),
            bus=EventBus(background=s.background_delivery),
            base_url=s.base_url,
            inactivity_threshold=timedelta(minutes=s.abandonment_inactivity_minutes),
            external_timeout=s.external_call_timeout_seconds,
            submission_base_delay=s.submission_base_delay_seconds,
        )
        self._initialized = True
        logger.info(f"All services initialized ({self.storage} storage)")

    def _build_stores(self) -> dict:
        if self.settings.uses_database:
            from database.session import get_session_factory
            from database.stores import SqlAuditSink, SqlDeadLetterStore, SqlLeadStore, SqlTokenStore, SqlVisitorStore

            try:
                factory = get_session_factory()
            except RuntimeError as e:
                logger.warning(f"{e} Falling back to in-memory stores")
            else:
                self.storage = "database"
                return {
                    "visitors": SqlVisitorStore(factory),
                    "tokens": SqlTokenStore(factory),
                    "leads": SqlLeadStore(factory),
                    "dead_letters": SqlDeadLetterStore(factory),
                    "audit_sink": SqlAuditSink(factory),
                }

        from lead_pipeline.activity_log import InMemoryAuditSink
        from lead_pipeline.stores import (
            InMemoryDeadLetterStore, InMemoryLeadStore, InMemoryTokenStore, InMemoryVisitorStore,
        )
        return {
            "visitors": InMemoryVisitorStore(),
            "tokens": InMemoryTokenStore(),
            "leads": InMemoryLeadStore(),
            "dead_letters": InMemoryDeadLetterStore(),
            "audit_sink": InMemoryAuditSink(),
        }

    def _build_sender(self) -> MessageSender:
        s = self.settings
        primary = None
        if s.sendgrid_api_key:
            primary = SendGridEmail(
                api_key=s.sendgrid_api_key,
                from_email=s.email_from_address,
                from_name=s.email_from_name,
                timeout=s.external_call_timeout_seconds,
            )
        fallback = SESEmail(region=s.ses_region, from_email=s.email_from_address) if s.ses_region else None

        if primary is None and fallback is None:
            logger.warning("SENDGRID_API_KEY and SES_REGION not set, re-engagement email disabled")
            return UnconfiguredSender()
        if primary is None:
            return fallback
        return EmailRouter(primary, fallback)

    def _build_scorer(self):
        s = self.settings
        if not s.credit_scorer_url:
            logger.warning("CREDIT_SCORER_URL not set, credit checks will fail")
            return UnconfiguredScorer()
        return HttpCreditScorer(
            s.credit_scorer_url,
            api_key=s.credit_scorer_api_key,
            timeout=s.external_call_timeout_seconds,
        )

    def _build_crm(self):
        s = self.settings
        if not s.crm_url:
            logger.warning("CRM_URL not set, leads will be dead-lettered")
            return UnconfiguredCRM()
        return HttpCRMSubmitter(s.crm_url, api_key=s.crm_api_key, timeout=s.external_call_timeout_seconds)

    def start_jobs(self):
        """Schedule the inactivity sweep, event replay and dead-letter reprocessing."""
        s = self.settings or get_settings()
        self.jobs = [
            PeriodicJob("abandonment_sweep", s.abandonment_sweep_interval_seconds, self.pipeline.detector.sweep),
            PeriodicJob(
                "dead_letter_reprocess",
                s.dead_letter_reprocess_interval_seconds,
                self.pipeline.reprocessor.run_once,
            ),
            PeriodicJob(
                "event_replay",
                s.event_replay_interval_seconds,
                self.pipeline.bus.replay_undelivered,
            ),
        ]
        for job in self.jobs:
            job.start()

    async def shutdown(self):
        for job in self.jobs:
            await job.stop()
        if self.pipeline:
            await self.pipeline.bus.drain()

    @property
    def is_ready(self) -> bool:
        return self._initialized and self.pipeline is not None

    def health(self) -> dict:
        """Return health status of all services."""
        return {
            "initialized": self._initialized,
            "storage": self.storage,
            "jobs": {job.name: job.running for job in self.jobs},
            "undelivered_events": len(self.pipeline.bus.undelivered) if self.pipeline else 0,
        }


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's services."""
    return request.app.state.services
