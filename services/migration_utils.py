"""Small, stateless helpers shared by the legacy mapper and the apply engine.

Everything in here operates on plain JSON values (``dict``/``list``/``str``/
numbers/``None``) and never touches storage, which keeps the dry run phase
free of side effects.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, MutableSequence, Optional, Tuple, Union

__all__ = [
    "deep_clone",
    "deterministic_id",
    "is_plain_object",
    "json_deep_equal",
    "normalize_month_in_entry",
    "normalize_month_key",
    "parse_locale_number",
    "push_issue",
    "seed_text",
    "stable_hash",
]

Number = Union[int, float]

_ISO_MONTH = re.compile(r"^[0-9]{4}-[0-9]{2}$")
_DE_MONTH = re.compile(r"^([0-9]{2})-([0-9]{4})$")
_NUMBER_NOISE = re.compile(r"[^0-9,.\-]")


# ---------------------------------------------------------------------------
# Month keys
# ---------------------------------------------------------------------------


def normalize_month_key(value: Any) -> Optional[str]:
    """Return ``value`` as a ``YYYY-MM`` month key or ``None``.

    ``YYYY-MM`` passes through, ``MM-YYYY`` is swapped. Anything else is not a
    month key; callers decide whether that matters.
    """

    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if _ISO_MONTH.match(raw):
        return raw
    match = _DE_MONTH.match(raw)
    if match:
        return f"{match.group(2)}-{match.group(1)}"
    return None


def normalize_month_in_entry(entry: Mapping[str, Any]) -> Tuple[Dict[str, Any], bool]:
    month = normalize_month_key(entry.get("month"))
    if not month or month == entry.get("month"):
        return dict(entry), False
    updated = dict(entry)
    updated["month"] = month
    return updated, True


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def parse_locale_number(value: Any) -> Optional[Number]:
    """Parse native numbers and decimal-comma strings such as ``"1.234,56"``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    cleaned = _NUMBER_NOISE.sub("", value.strip())
    if not cleaned:
        return None

    comma_index = cleaned.rfind(",")
    if comma_index >= 0:
        int_part = cleaned[:comma_index].replace(".", "")
        frac_part = cleaned[comma_index + 1:].replace(".", "")
        candidate = f"{int_part}.{frac_part}"
    else:
        if cleaned.count(".") > 1:
            return None
        candidate = cleaned

    try:
        parsed = float(candidate)
    except ValueError:
        return None
    if not math.isfinite(parsed):
        return None
    if parsed.is_integer():
        return int(parsed)
    return parsed


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def seed_text(part: Any) -> str:
    """Render a seed part the way a JSON consumer would print it."""

    if part is None:
        return ""
    if isinstance(part, bool):
        return "true" if part else "false"
    if isinstance(part, float) and math.isfinite(part) and part.is_integer():
        return str(int(part))
    if isinstance(part, (dict, list)):
        return json.dumps(part, sort_keys=True, separators=(",", ":"))
    return str(part)


def stable_hash(seed: str) -> str:
    # djb2 over UTF-16 code units, wrapped to signed 32 bit
    value = 5381
    encoded = seed.encode("utf-16-le")
    for offset in range(0, len(encoded), 2):
        unit = encoded[offset] | (encoded[offset + 1] << 8)
        value = ((value << 5) + value + unit) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    return _to_base36(abs(value))


def deterministic_id(prefix: str, seed_parts: Iterable[Any]) -> str:
    seed = "|".join(seed_text(part) for part in seed_parts)
    return f"{prefix}-{stable_hash(seed)}"


def _to_base36(number: int) -> str:
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    digits: List[str] = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(alphabet[remainder])
    return "".join(reversed(digits))


# ---------------------------------------------------------------------------
# Structural helpers
# ---------------------------------------------------------------------------


def deep_clone(value: Any) -> Any:
    # Values JSON cannot represent are stringified rather than rejected
    return json.loads(json.dumps(value, default=str))


def is_plain_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def json_deep_equal(left: Any, right: Any) -> bool:
    """Strict structural equality for JSON values.

    Key order is ignored. Types are not coerced: ``"30"`` differs from ``30``
    and ``True`` differs from ``1``, while ``1`` equals ``1.0``.
    """

    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left.keys()) != set(right.keys()):
            return False
        return all(json_deep_equal(left[key], right[key]) for key in left)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(json_deep_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right


def push_issue(issues: MutableSequence[Any], issue: Any) -> None:
    issues.append(issue)
