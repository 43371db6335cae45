import logging
import math
from typing import Any, Iterable

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = "234"
DEFAULT_LOCAL_LENGTH = 10
DEFAULT_TRUNK_PREFIX = "0"


def _to_text(phone: Any) -> str | None:
    if phone is None or isinstance(phone, bool):
        return None
    if isinstance(phone, float):
        # Spreadsheet cells arrive as floats: 2348012345678.0
        if not math.isfinite(phone):
            return None
        return str(int(phone))
    if isinstance(phone, int):
        return str(phone)
    return str(phone).strip()


def _expand_scientific(text: str) -> str | None:
    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return str(int(value))


def normalize_phone(
    phone: Any,
    *,
    country_code: str = DEFAULT_COUNTRY_CODE,
    local_length: int = DEFAULT_LOCAL_LENGTH,
    trunk_prefix: str = DEFAULT_TRUNK_PREFIX,
) -> str | None:
    """Map a phone value to ``country_code`` + ``local_length`` digits, or None.

    Handles spreadsheet scientific notation (``2.34815E+12``), punctuation and
    ``+`` prefixes, local numbers with or without the trunk digit, and numbers
    carrying extra trailing digits after the country code (truncated). Never
    returns a partially normalized value.
    """

    text = _to_text(phone)
    if not text:
        return None

    if "e" in text or "E" in text:
        expanded = _expand_scientific(text)
        if expanded is None:
            logger.warning("Invalid scientific notation in phone number: %s", text)
            return None
        text = expanded

    digits = "".join(ch for ch in text if ch.isascii() and ch.isdigit())
    if not digits:
        return None

    target_length = len(country_code) + local_length

    if digits.startswith(country_code) and len(digits) == target_length:
        normalized = digits
    elif digits.startswith(country_code) and len(digits) > target_length:
        normalized = digits[:target_length]
        logger.warning("Phone number too long, truncated: %s -> %s", text, normalized)
    elif digits.startswith(trunk_prefix) and len(digits) == local_length + len(trunk_prefix):
        normalized = country_code + digits[len(trunk_prefix):]
    elif len(digits) == local_length:
        normalized = country_code + digits
    elif len(digits) == local_length - 1:
        normalized = country_code + trunk_prefix + digits
    else:
        logger.warning("Unrecognized phone format: %s (cleaned: %s, length: %s)", text, digits, len(digits))
        return None

    if len(normalized) == target_length and normalized.isdigit() and normalized.startswith(country_code):
        return normalized
    return None


def normalize_phones(phones: Iterable[Any], **options: Any) -> list[tuple[str, str | None]]:
    """Return ``(original, normalized)`` pairs, for previews and diagnostics."""

    return [("" if phone is None else str(phone), normalize_phone(phone, **options)) for phone in phones]
