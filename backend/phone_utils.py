"""
Phone number normalization.

One canonical rule shared by the phone-match attribution fallback and any
diagnostics, so calls and contacts are always compared in the same form:

1. Drop a trailing extension ("ext. 12", "x12", "#12").
2. Keep digits only. A leading "00" international prefix counts like "+".
3. Numbers written with "+"/"00" are already country-coded (E.164 digits).
4. Unprefixed numbers of 11-15 digits not starting with a trunk "0" are
   taken as country-coded too (how the call log stores them).
5. National numbers (trunk "0" prefix, or exactly 10 digits) get the
   configured default country code; without one they are ambiguous and
   return None.
6. Anything shorter than 8 or longer than 15 digits returns None.

None means "never matches", which is what callers want for junk data.
"""

import re
from typing import Optional

MIN_DIGITS = 8
MAX_DIGITS = 15

_EXTENSION_RE = re.compile(r"\s*(?:ext\.?|extension|x|#)\s*\d+\s*$", re.IGNORECASE)
_NON_DIGIT_RE = re.compile(r"\D")


def normalize_phone(raw, default_country_code: Optional[str] = None) -> Optional[str]:
    """Return the digits-only, country-coded form of `raw`, or None."""
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None

    text = _EXTENSION_RE.sub("", text)
    international = text.startswith("+")
    digits = _NON_DIGIT_RE.sub("", text)

    if digits.startswith("00"):
        digits = digits[2:]
        international = True

    if not digits:
        return None

    if not international:
        country_code = (default_country_code or "").lstrip("+")
        if digits.startswith("0"):
            if not country_code:
                return None
            digits = country_code + digits.lstrip("0")
        elif len(digits) <= 10:
            if not country_code or len(digits) != 10:
                return None
            digits = country_code + digits

    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        return None
    return digits
