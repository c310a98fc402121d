"""Heuristic detection of the schema version of an uploaded workspace."""
from __future__ import annotations

from typing import Any

from services.migration_utils import is_plain_object

LEGACY_V1 = "legacy_v1"
UNKNOWN = "unknown"

_LEGACY_HINT_KEYS = (
    "settings",
    "products",
    "suppliers",
    "pos",
    "fos",
    "payments",
    "forecast",
    "inventory",
    "fixcosts",
    "monthlyActuals",
)
_MIN_HINTS = 3


def detect_source_version(payload: Any) -> str:
    """Classify ``payload`` as ``legacy_v1`` when enough familiar root keys are present.

    This only informs the dry run report; mapping behaves the same either way.
    """

    if not is_plain_object(payload):
        return UNKNOWN
    hits = sum(1 for key in _LEGACY_HINT_KEYS if key in payload)
    return LEGACY_V1 if hits >= _MIN_HINTS else UNKNOWN
