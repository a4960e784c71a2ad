"""
PII redaction applied at the response boundary.

Phone numbers are stored in full; anything leaving the service goes through
mask_phone_number first.
"""

import re
from typing import Optional

MASK_PREFIX = "***-***-"
_NON_DIGITS = re.compile(r"\D")


def mask_phone_number(number: Optional[str]) -> Optional[str]:
    """Redact a phone number down to its last four digits: ``***-***-1234``."""
    if number is None:
        return None

    digits = _NON_DIGITS.sub("", number)
    if len(digits) < 4:
        return f"{MASK_PREFIX}****"
    return f"{MASK_PREFIX}{digits[-4:]}"


def is_masked(number: Optional[str]) -> bool:
    return number is None or re.fullmatch(r"\*\*\*-\*\*\*-(\d{4}|\*{4})", number) is not None
