"""
Error taxonomy for the Loan Lead Pipeline.

ValidationError      - malformed input, never retried
TransientExternalError - timeouts, 5xx, connection failures; retried per stage policy
TerminalExternalError  - 4xx or explicit rejection; never retried
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Malformed input (phone, email, missing fields)."""


class MissingField(ValidationError):
    def __init__(self, field_name: str):
        super().__init__(f"Missing required field: {field_name}")
        self.field_name = field_name


class InvalidEmail(ValidationError):
    pass


class InvalidPhone(ValidationError):
    pass


class VisitorNotFound(ValidationError):
    def __init__(self, visitor_id: str):
        super().__init__(f"Visitor not found: {visitor_id}")
        self.visitor_id = visitor_id


class LeadNotFound(ValidationError):
    def __init__(self, lead_id: str):
        super().__init__(f"Lead not found: {lead_id}")
        self.lead_id = lead_id


class InvalidTransition(PipelineError):
    """Lead status change that the lifecycle does not permit."""


class ExternalError(PipelineError):
    """Failure of an external collaborator."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientExternalError(ExternalError):
    """Timeout or 5xx-class failure. Safe to retry."""

    retryable = True


class TerminalExternalError(ExternalError):
    """4xx-class failure or explicit rejection. Never retried."""

    retryable = False


def classify_status(status_code: int, message: str) -> Optional[ExternalError]:
    """Map an HTTP status code to the error taxonomy; None means success."""
    if 200 <= status_code < 300:
        return None
    if status_code >= 500:
        return TransientExternalError(message, status_code=status_code)
    return TerminalExternalError(message, status_code=status_code)
