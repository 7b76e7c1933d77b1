"""Normalization functions for budget snapshot payloads.

All functions accept loosely-typed JSON values and return the appropriate
type or None when the value is absent or unusable.
"""

from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any

_TRUE_STRINGS = frozenset({"1", "true", "t", "yes", "y"})
_FALSE_STRINGS = frozenset({"0", "false", "f", "no", "n"})


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
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: text_or_none
# ---------------------------------------------------------------------------

def text_or_none(value: Any) -> str | None:
    """Coerce a JSON scalar to trimmed text.

    Numbers become their decimal string form; booleans, lists and dicts are
    not text and return None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return trim(value)
    return None


# ---------------------------------------------------------------------------
# Rule 4: normalize_key  (original identifiers inside a Dataset)
# ---------------------------------------------------------------------------

def normalize_key(value: Any) -> str | None:
    """Return the lookup form of an original entity id.

    Account and tag ids arrive as integers, expense and income ids as text;
    a payload that went through another serializer may carry ``"7"`` where
    the export wrote ``7``.  Both normalize to ``"7"``.
    """
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return text_or_none(value)


# ---------------------------------------------------------------------------
# Rule 5: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: Any) -> Decimal | None:
    """Parse a decimal number from a JSON number or string, None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # repr round-trips, so 12.3 stays 12.3 rather than its binary expansion
        d = Decimal(repr(value))
        return d if d.is_finite() else None
    if not isinstance(value, str):
        return None
    v = trim(value)
    if v is None:
        return None
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


# ---------------------------------------------------------------------------
# Rule 6: parse_flag
# ---------------------------------------------------------------------------

def parse_flag(value: Any) -> bool | None:
    """Parse a boolean stored as bool, 0/1 or a yes/no style string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return True
        if v in _FALSE_STRINGS:
            return False
    return None


# ---------------------------------------------------------------------------
# Rule 7: setting_text
# ---------------------------------------------------------------------------

def setting_text(value: Any) -> str | None:
    """Return the stored text form of a setting value.

    Settings are opaque key/value rows.  Strings are stored as-is; other
    JSON values (booleans, objects, numbers) are stored as their JSON text.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


# ---------------------------------------------------------------------------
# Rule 8: to_json_number
# ---------------------------------------------------------------------------

def to_json_number(value: Decimal | None) -> int | float | str | None:
    """Render a Decimal for a JSON payload, keeping integers integral.

    Fractions become floats when the float reads back as the same value;
    otherwise the exact decimal string is emitted (parse_numeric accepts it).
    """
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    as_float = float(value)
    if Decimal(repr(as_float)) == value:
        return as_float
    return str(value)

