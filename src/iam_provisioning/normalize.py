"""Normalization functions for provisioning CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_TRUE_TOKENS = frozenset({"true"})
_FALSE_TOKENS = frozenset({"false"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    """Parse 'true'/'false' case-insensitively.

    Anything else, including blank, returns None so the caller can reject
    the row instead of guessing.
    """
    v = trim(value)
    if v is None:
        return None
    lowered = v.lower()
    if lowered in _TRUE_TOKENS:
        return True
    if lowered in _FALSE_TOKENS:
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 3: is_valid_email
# ---------------------------------------------------------------------------

def is_valid_email(value: str | None) -> bool:
    """Return True if the trimmed value has the minimal local@domain.tld shape."""
    v = trim(value)
    if not v:
        return False
    return _EMAIL_RE.match(v) is not None


def normalize_header(value: str | None) -> str:
    """Strip a header cell, including a stray UTF-8 BOM."""
    if value is None:
        return ""
    return value.replace("\ufeff", "").strip()
