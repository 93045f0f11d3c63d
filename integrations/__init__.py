"""
Integrations Module for the Loan Lead Pipeline.

Concrete adapters for the pipeline's external capabilities:
- Email delivery (SendGrid primary, SES fallback)
- Soft credit pull over HTTP
- Dealer CRM webhook
- Contact directory
"""

from .contact_directory import InMemoryContactDirectory
from .credit_scorer import HttpCreditScorer
from .crm import HttpCRMSubmitter
from .email import EmailRouter, SendGridEmail, SESEmail

__all__ = [
    "InMemoryContactDirectory",
    "HttpCreditScorer",
    "HttpCRMSubmitter",
    "EmailRouter",
    "SendGridEmail",
    "SESEmail",
]
