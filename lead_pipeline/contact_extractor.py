"""
Contact Extraction for the Loan Lead Pipeline.

Pulls a phone number out of free chat text and normalizes it to E.164;
hashes email addresses so the plaintext never reaches storage or logs.
"""

import hashlib
import re
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "1"

E164_PATTERN = re.compile(r'^\+[1-9]\d{7,14}$')
EMAIL_PATTERN = re.compile(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$')
EMAIL_HASH_PATTERN = re.compile(r'^[0-9a-f]{64}$')

# North American numbers: optional +1 / 1, optional parentheses, any of
# space, dash or dot as separators.
NANP_PHONE_PATTERN = re.compile(
    r'(?<![\d+])'
    r'(?:\+?1[\s.-]?)?'        # Optional country code
    r'\(?[2-9]\d{2}\)?'        # Area code, optionally parenthesized
    r'[\s.-]?'
    r'\d{3}'
    r'[\s.-]?'
    r'\d{4}'
    r'(?!\d)'
)

# Other international numbers must carry an explicit + prefix.
INTL_PHONE_PATTERN = re.compile(
    r'(?<!\d)\+[1-9]\d{0,3}(?:[\s.-]?\(?\d{1,4}\)?){2,5}(?!\d)'
)


@dataclass
class ExtractedContact:
    """Contact details found in a message."""
    phone_numbers: List[str] = field(default_factory=list)
    raw_matches: List[str] = field(default_factory=list)

    @property
    def phone(self) -> Optional[str]:
        return self.phone_numbers[0] if self.phone_numbers else None

    def has_contact_info(self) -> bool:
        return bool(self.phone_numbers)


def normalize_phone(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> Optional[str]:
    """
    Normalize a phone number to E.164, or return None if it cannot be.

    "(555) 123-4567", "555.123.4567", "1 555 123 4567" and "+1-555-123-4567"
    all become "+15551234567".
    """
    if not raw:
        return None
    raw = raw.strip()
    digits = re.sub(r'\D', '', raw)
    if not digits:
        return None

    if raw.startswith('+'):
        candidate = f"+{digits}"
    elif len(digits) == 10:
        candidate = f"+{default_country_code}{digits}"
    elif len(digits) == 11 and digits.startswith(default_country_code):
        candidate = f"+{digits}"
    else:
        return None

    return candidate if E164_PATTERN.match(candidate) else None


def is_valid_e164(phone: str) -> bool:
    return bool(phone and E164_PATTERN.match(phone))


def mask_phone(phone: str) -> str:
    """Last four digits only, for logs and the audit trail."""
    return f"***{phone[-4:]}" if phone else ""


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email and EMAIL_PATTERN.match(email.strip()))


def is_email_hash(value: str) -> bool:
    return bool(value and EMAIL_HASH_PATTERN.match(value))


def hash_email(email: str) -> str:
    """Irreversible digest of a normalized email address."""
    return hashlib.sha256(normalize_email(email).encode("utf-8")).hexdigest()


class ContactExtractor:
    """
    Extracts contact details from customer messages.

    Uses pattern matching tolerant of common formatting.
    """

    def __init__(self, default_country_code: str = DEFAULT_COUNTRY_CODE):
        self.default_country_code = default_country_code

    def extract(self, message: str) -> ExtractedContact:
        contact = ExtractedContact()
        if not message:
            return contact

        spans = []
        for pattern in (INTL_PHONE_PATTERN, NANP_PHONE_PATTERN):
            for match in pattern.finditer(message):
                if any(match.start() < end and start < match.end() for start, end in spans):
                    continue
                normalized = normalize_phone(match.group(0), self.default_country_code)
                if normalized and normalized not in contact.phone_numbers:
                    spans.append((match.start(), match.end()))
                    contact.raw_matches.append(match.group(0))
                    contact.phone_numbers.append(normalized)

        # Preserve the order numbers appear in the message
        if len(spans) > 1:
            ordered = sorted(zip(spans, contact.phone_numbers, contact.raw_matches))
            contact.phone_numbers = [p for _, p, _ in ordered]
            contact.raw_matches = [r for _, _, r in ordered]

        return contact

    def extract_phone(self, message: str) -> Optional[str]:
        return self.extract(message).phone
