"""Phone number helpers."""

from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D")


def format_e164(raw: str | None) -> str | None:
    """Normalize a North American or already-international number to E.164.

    Returns:
        ``+<digits>`` or None when the input cannot be interpreted
    """
    if not raw:
        return None

    raw = raw.strip()
    has_plus = raw.startswith("+")
    digits = _NON_DIGITS.sub("", raw)

    if len(digits) == 10 and not has_plus:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if has_plus and 8 <= len(digits) <= 15 and not digits.startswith("0"):
        return f"+{digits}"
    return None


def normalize_for_match(phone: str | None) -> str:
    """Strip country prefix so legs reported in different formats compare equal."""
    if not phone:
        return ""
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits
