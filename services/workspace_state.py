"""Schema version 2 workspace document scaffolding."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Tuple

from services.migration_utils import deep_clone, is_plain_object

SCHEMA_VERSION = 2
IMPORT_HISTORY_LIMIT = 30

ARRAY_SECTIONS: Tuple[str, ...] = (
    "products",
    "suppliers",
    "productCategories",
    "pos",
    "fos",
    "payments",
    "incomings",
    "extras",
    "dividends",
    "fixcosts",
)

OBJECT_SECTIONS: Tuple[str, ...] = (
    "settings",
    "forecast",
    "inventory",
    "monthlyActuals",
    "fixcostOverrides",
)

# Report order of the per-section statistics
STATS_ORDER: Tuple[str, ...] = (
    "settings",
    "productCategories",
    "suppliers",
    "products",
    "pos",
    "fos",
    "payments",
    "incomings",
    "extras",
    "dividends",
    "fixcosts",
    "fixcostOverrides",
    "monthlyActuals",
    "inventory",
    "forecast",
)


def create_empty_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {"schemaVersion": SCHEMA_VERSION}
    for section in ARRAY_SECTIONS:
        state[section] = []
    state["settings"] = {}
    state["forecast"] = {"forecastManual": {}, "forecastImport": {}}
    state["inventory"] = {"snapshots": [], "settings": {}}
    state["monthlyActuals"] = {}
    state["fixcostOverrides"] = {}
    state["legacyMeta"] = {"unmapped": {}, "importHistory": []}
    return state


def known_root_keys() -> frozenset:
    return frozenset(create_empty_state().keys())


def ensure_app_state_v2(value: Any) -> Dict[str, Any]:
    """Return a fresh schema version 2 document built on top of ``value``.

    Sections missing from ``value`` are filled from the empty state, the schema
    version is forced to ``2`` and ``legacyMeta`` is rebuilt when malformed.
    """

    state = create_empty_state()
    if not is_plain_object(value):
        return state

    state.update(value)
    state["schemaVersion"] = SCHEMA_VERSION

    legacy_meta = state.get("legacyMeta")
    if not is_plain_object(legacy_meta):
        legacy_meta = {}
    unmapped = legacy_meta.get("unmapped")
    history = legacy_meta.get("importHistory")
    state["legacyMeta"] = {
        **legacy_meta,
        "unmapped": dict(unmapped) if is_plain_object(unmapped) else {},
        "importHistory": list(history) if isinstance(history, list) else [],
    }
    return state


def stamp_import_history(
    state: Mapping[str, Any],
    event: Mapping[str, Any],
    *,
    limit: int = IMPORT_HISTORY_LIMIT,
) -> Dict[str, Any]:
    """Prepend ``event`` to the import history and keep the ``limit`` most recent entries."""

    stamped = ensure_app_state_v2(deep_clone(state))
    history: List[Any] = [dict(event), *stamped["legacyMeta"]["importHistory"]]
    stamped["legacyMeta"]["importHistory"] = history[:limit]
    return stamped
