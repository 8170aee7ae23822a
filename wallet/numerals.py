import unicodedata
from typing import Optional


GROUP_SEPARATORS = frozenset(",'_ \u066c\u060c\u2019\u00a0\u202f\u2009")
MAX_DIGITS = 18


def normalize_digits(text: str) -> str:
    """Map every Unicode decimal digit (Persian, Arabic-Indic, ...) to ASCII."""
    return "".join(
        str(unicodedata.decimal(ch)) if ch.isdecimal() else ch
        for ch in text or ""
    )


def parse_localized_int(text: str) -> Optional[int]:
    cleaned = "".join(ch for ch in normalize_digits(text).strip() if ch not in GROUP_SEPARATORS)
    if not cleaned or len(cleaned) > MAX_DIGITS or not cleaned.isascii() or not cleaned.isdigit():
        return None
    return int(cleaned)


def format_amount(amount: int) -> str:
    return f"{amount:,}"
