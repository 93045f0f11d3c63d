"""
Contact directory for the Loan Lead Pipeline.

Holds deliverable addresses outside visitor storage, keyed by email hash.
"""

import logging
from typing import Dict, Optional

from lead_pipeline.capabilities import ContactDirectory
from lead_pipeline.contact_extractor import hash_email, is_valid_email, normalize_email
from lead_pipeline.errors import InvalidEmail

logger = logging.getLogger(__name__)


class InMemoryContactDirectory(ContactDirectory):
    """Process-local address book."""

    def __init__(self):
        self._addresses: Dict[str, str] = {}

    async def register(self, email: str) -> str:
        if not is_valid_email(email):
            raise InvalidEmail("Invalid email address")
        email_hash = hash_email(email)
        self._addresses[email_hash] = normalize_email(email)
        return email_hash

    async def resolve(self, email_hash: str) -> Optional[str]:
        return self._addresses.get(email_hash)

    def __len__(self) -> int:
        return len(self._addresses)
