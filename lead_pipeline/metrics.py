"""
Prometheus business metrics for the Loan Lead Pipeline.

HTTP-level metrics live in api.middleware.metrics; these counters cover
pipeline stages, the credit cache and CRM submissions.
"""

from prometheus_client import Counter

EVENTS_PUBLISHED = Counter(
    "lead_pipeline_events_published_total",
    "Pipeline events published on the bus",
    ["event"],
)
DELIVERY_FAILURES = Counter(
    "lead_pipeline_delivery_failures_total",
    "Event handler failures",
    ["event"],
)
DELIVERIES_ABANDONED = Counter(
    "lead_pipeline_deliveries_abandoned_total",
    "Failed event deliveries dropped without further replay",
    ["event"],
)
STAGE_OUTCOMES = Counter(
    "lead_pipeline_stage_outcomes_total",
    "Activity records written per stage and outcome",
    ["stage", "outcome"],
)
CACHE_LOOKUPS = Counter(
    "lead_pipeline_credit_cache_lookups_total",
    "Credit result cache lookups",
    ["result"],
)
SUBMISSION_ATTEMPTS = Counter(
    "lead_pipeline_submission_attempts_total",
    "CRM submission attempts",
    ["outcome"],
)
DEAD_LETTERS = Counter(
    "lead_pipeline_dead_letters_total",
    "Leads moved to the dead-letter store",
)


def record_event(event: str):
    EVENTS_PUBLISHED.labels(event=event).inc()


def record_delivery_failure(event: str):
    DELIVERY_FAILURES.labels(event=event).inc()


def record_delivery_abandoned(event: str):
    DELIVERIES_ABANDONED.labels(event=event).inc()


def record_stage_outcome(stage: str, outcome: str):
    STAGE_OUTCOMES.labels(stage=stage, outcome=outcome).inc()


def record_cache_lookup(hit: bool):
    CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()


def record_submission_attempt(outcome: str):
    SUBMISSION_ATTEMPTS.labels(outcome=outcome).inc()


def record_dead_letter():
    DEAD_LETTERS.inc()
