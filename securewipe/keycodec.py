"""
Recovery key helpers.

The key is a 20-digit numeric string. Spaces are a display affordance only;
the stored and compared value is always the bare digits.
"""

from __future__ import annotations

import re
import secrets

from .models import RECOVERY_KEY_LENGTH

_NON_DIGIT = re.compile(r"[^0-9]")


def clean(text: str) -> str:
    """Strip every character that is not an ASCII digit."""
    if not text:
        return ""
    return _NON_DIGIT.sub("", text)


def format(digits: str) -> str:
    """Group digits in runs of 4 separated by single spaces."""
    if not digits:
        return ""
    return " ".join(digits[i:i + 4] for i in range(0, len(digits), 4))


def generate(length: int = RECOVERY_KEY_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def is_well_formed(text: str) -> bool:
    return len(clean(text)) == RECOVERY_KEY_LENGTH


def matches(candidate: str, stored: str) -> bool:
    """
    Compare two keys ignoring separators.

    String comparison, not numeric: leading zeros are significant.
    """
    a = clean(candidate).encode("ascii")
    b = clean(stored).encode("ascii")
    if not b:
        return False
    return secrets.compare_digest(a, b)


def masked(key: str) -> str:
    """Render a key for logs, showing only the last 4 digits."""
    digits = clean(key)
    if not digits:
        return "<none>"
    return "**** " * ((len(digits) - 1) // 4) + digits[-4:]
