# utils/phone_utils.py
"""
Single source of truth for phone normalization (E.164) used everywhere:
conversation identity, duplicate detection, lookups. Turkey (+90) is the default country.
"""
from typing import Optional, Tuple

import config
from services.migration_errors import NormalizationError

# Single characters allowed between digit groups ("0531-494 25.94", "(0531) 494")
SEPARATOR_CHARS = "-.()/"
PLACEHOLDER_VALUES = ("unknown", "none", "null")


def _is_ascii_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _extract_digits(value: str) -> Tuple[str, bool]:
    """
    Collect the digits of a raw phone string.
    Text before the first digit is dropped (a "+" there marks an international number).
    A non-digit run between digits is a separator only when, ignoring whitespace, it is a
    single character from SEPARATOR_CHARS. Anything else starts an extension suffix
    ("ext. 12", "x12", "#3") and ends the number.
    Returns (digits, has_plus).
    """
    has_plus = False
    digits = []
    pending = ""
    for ch in value:
        if _is_ascii_digit(ch):
            if digits and pending:
                compact = "".join(c for c in pending if not c.isspace())
                if len(compact) > 1 or (compact and compact not in SEPARATOR_CHARS):
                    break
            digits.append(ch)
            pending = ""
        elif not digits:
            if ch == "+":
                has_plus = True
        else:
            pending += ch
    return "".join(digits), has_plus


def normalize_phone(raw_phone: Optional[str], default_country_code: Optional[str] = None) -> str:
    """
    Normalize to E.164 ("+905314942594"). Used for ALL identity keys and comparisons.
    - Remove spaces/dashes/dots/parentheses, drop extension suffixes
    - "+" or "00" prefix -> number already carries its country code
    - Leading "0" -> national trunk prefix, replaced by the default country code
    - At most NATIONAL_NUMBER_LENGTH digits -> local number, default country code prepended
    Raises NormalizationError for empty, placeholder, too short or too long input.
    """
    if raw_phone is None:
        raise NormalizationError(raw_phone, "empty")
    value = str(raw_phone).strip()
    if not value:
        raise NormalizationError(raw_phone, "empty")
    if value.lower() in PLACEHOLDER_VALUES or value.lower().startswith("room:"):
        raise NormalizationError(raw_phone, "placeholder")

    digits, has_plus = _extract_digits(value)
    if not digits:
        raise NormalizationError(raw_phone, "no digits")

    country_code = default_country_code or config.DEFAULT_COUNTRY_CODE
    international = has_plus
    trunk = False
    if has_plus:
        significant = digits
    elif digits.startswith("00"):
        # International dialing prefix
        significant = digits[2:]
        international = True
    elif digits.startswith("0"):
        significant = digits[1:]
        trunk = True
    else:
        significant = digits

    if len(significant) < config.MIN_SIGNIFICANT_DIGITS:
        raise NormalizationError(raw_phone, f"fewer than {config.MIN_SIGNIFICANT_DIGITS} significant digits")

    if international:
        full = significant
    elif trunk or len(significant) <= config.NATIONAL_NUMBER_LENGTH:
        full = country_code + significant
    else:
        # Already has country code (e.g. WhatsApp wa_id "905314942594")
        full = significant

    if len(full) > config.MAX_E164_DIGITS:
        raise NormalizationError(raw_phone, f"more than {config.MAX_E164_DIGITS} digits")
    return "+" + full


def try_normalize_phone(raw_phone: Optional[str]) -> str:
    """Same as normalize_phone but returns empty string for invalid input."""
    try:
        return normalize_phone(raw_phone)
    except NormalizationError:
        return ""


def phones_match(phone_a: Optional[str], phone_b: Optional[str]) -> bool:
    """True if both raw strings normalize to the same number. Invalid input never matches."""
    normalized_a = try_normalize_phone(phone_a)
    if not normalized_a:
        return False
    return normalized_a == try_normalize_phone(phone_b)


def format_phone_display(raw_phone: Optional[str]) -> str:
    """Readable form for operators: "+90 531 494 25 94"."""
    normalized = try_normalize_phone(raw_phone)
    if not normalized:
        return "" if raw_phone is None else str(raw_phone)
    digits = normalized[1:]
    if digits.startswith("90") and len(digits) == 12:
        national = digits[2:]
        return f"+90 {national[:3]} {national[3:6]} {national[6:8]} {national[8:]}"
    if digits.startswith("1") and len(digits) == 11:
        national = digits[1:]
        return f"+1 {national[:3]} {national[3:6]} {national[6:]}"
    return normalized
