"""Phone number normalization for outbound SMS."""

import re

from petwatch.core.config import settings

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str, country_code: str | None = None) -> str:
    """
    Normalize a phone number to +<digits>.

    10 digits get the default country prefix, 11 digits starting with 1 are
    kept as-is, anything else passes through with a '+' prefix. Applying it
    to an already-normalized number returns the same value.

    >>> normalize_phone("(555) 123-4567")
    '+15551234567'
    """
    country_code = _NON_DIGITS.sub("", country_code or settings.default_country_code)
    digits = _NON_DIGITS.sub("", phone)

    if len(digits) == 10:
        return f"+{country_code}{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"
