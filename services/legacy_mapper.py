"""Dry run conversion of legacy workspace documents into the version 2 schema.

Older releases of the planner persisted the workspace as a loosely shaped JSON
document: numbers typed by hand with decimal commas, month keys written as
``MM-YYYY``, records without identifiers and the occasional field nobody
remembers adding.  This module maps such a document onto the current schema
without touching storage.  Every coercion, dropped record and unknown field is
reported as an :class:`~services.migration_types.Issue` so the operator can
review the result before anything is applied.

The conversion is resilient rather than strict.  One malformed record never
aborts an import: it is either coerced or skipped and reported.  Top-level
fields we do not understand are preserved under ``legacyMeta.unmapped``.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from services.legacy_detect import UNKNOWN, detect_source_version
from services.migration_types import DryRunBundle, DryRunReport, Issue, SectionStats
from services.migration_utils import (
    deep_clone,
    deterministic_id,
    is_plain_object,
    normalize_month_in_entry,
    normalize_month_key,
    parse_locale_number,
    push_issue,
)
from services.workspace_state import (
    STATS_ORDER,
    create_empty_state,
    ensure_app_state_v2,
    known_root_keys,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["run_legacy_dry_run", "run_legacy_dry_run_from_json"]

COMMON_NUMERIC_FIELDS = (
    "units",
    "amazonUnits",
    "threePLUnits",
    "projectionMonths",
    "safetyDays",
    "realRevenueEUR",
    "realPayoutRatePct",
    "realClosingBalanceEUR",
)
ACTUALS_NUMERIC_FIELDS = ("realRevenueEUR", "realPayoutRatePct", "realClosingBalanceEUR")
DEFAULT_SEED_FIELDS = ("id", "sku", "poNo", "name")


@dataclass(frozen=True)
class ArraySectionRule:
    """How the records of one array section are validated and identified."""

    section: str
    id_prefix: str
    required_field: Optional[str] = None
    seed_fields: Tuple[str, ...] = DEFAULT_SEED_FIELDS
    id_field: str = "id"


ARRAY_SECTION_RULES: Tuple[ArraySectionRule, ...] = (
    ArraySectionRule("productCategories", "cat", required_field="name", seed_fields=("name",)),
    ArraySectionRule("suppliers", "sup", seed_fields=("name", "company_name")),
    ArraySectionRule("products", "prod", required_field="sku", seed_fields=("sku", "alias")),
    ArraySectionRule("pos", "po", seed_fields=("id", "poNo", "poNumber", "sku")),
    ArraySectionRule("fos", "fo", seed_fields=("id", "foNo", "sku")),
    ArraySectionRule("payments", "pay", seed_fields=("id", "paymentInternalId", "paidDate")),
    ArraySectionRule("incomings", "inc", seed_fields=("month", "revenueEur")),
    ArraySectionRule("extras", "extra", seed_fields=("date", "label", "amountEur")),
    ArraySectionRule("dividends", "div", seed_fields=("date", "amountEur")),
    ArraySectionRule("fixcosts", "fix", seed_fields=("name", "category", "startMonth")),
)


@dataclass
class _SectionTally:
    section: str
    total: int = 0
    mapped: int = 0
    normalized: int = 0
    skipped: int = 0
    blocked: int = 0

    def freeze(self) -> SectionStats:
        return SectionStats(
            section=self.section,
            total=self.total,
            mapped=self.mapped,
            normalized=self.normalized,
            skipped=self.skipped,
            blocked=self.blocked,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def run_legacy_dry_run(source_state: Any) -> DryRunBundle:
    """Map ``source_state`` onto the version 2 schema and report what happened.

    The input is never mutated and no storage is touched; calling this twice on
    the same input yields identical reports and mapped states.
    """

    source_version = detect_source_version(source_state)
    target = create_empty_state()
    issues: List[Issue] = []
    stats = {section: _SectionTally(section) for section in STATS_ORDER}

    if not is_plain_object(source_state):
        push_issue(
            issues,
            Issue(
                code="INVALID_JSON_ROOT",
                severity="error",
                entity_type="root",
                message="The JSON root is not an object.",
            ),
        )
        LOGGER.warning("Dry run rejected: root value is %s", type(source_state).__name__)
        return DryRunBundle(
            source_state=source_state,
            mapped_state=ensure_app_state_v2(target),
            report=_build_report(source_version, stats, issues),
        )

    source = deep_clone(source_state)

    _map_settings(target, source, stats["settings"], issues)
    for rule in ARRAY_SECTION_RULES:
        _map_array_section(target, source, rule, stats[rule.section], issues)
    _map_fixcost_overrides(target, source, stats["fixcostOverrides"], issues)
    _map_monthly_actuals(target, source, stats["monthlyActuals"], issues)
    _map_inventory(target, source, stats["inventory"], issues)
    _map_forecast(target, source, stats["forecast"], issues)
    _map_unknown_root_keys(target, source, issues)

    report = _build_report(source_version, stats, issues)
    LOGGER.info(
        "Dry run mapped %d records (%s, %d issues, canApply=%s)",
        sum(entry.mapped for entry in report.sections),
        source_version,
        len(report.issues),
        report.can_apply,
    )
    return DryRunBundle(
        source_state=source_state,
        mapped_state=ensure_app_state_v2(target),
        report=report,
    )


def run_legacy_dry_run_from_json(json_text: Union[str, bytes, bytearray]) -> DryRunBundle:
    """Parse ``json_text`` and run the dry run; unparseable text becomes an ``INVALID_JSON`` issue."""

    try:
        parsed = json.loads(json_text, parse_constant=_reject_constant)
    except (TypeError, ValueError, RecursionError) as exc:
        LOGGER.warning("Dry run rejected: could not parse JSON (%s)", exc)
        issue = Issue(
            code="INVALID_JSON",
            severity="error",
            entity_type="root",
            message="The JSON text could not be parsed.",
        )
        return DryRunBundle(
            source_state=None,
            mapped_state=create_empty_state(),
            report=DryRunReport(
                source_version=UNKNOWN,
                sections=(),
                issues=(issue,),
                can_apply=False,
            ),
        )
    return run_legacy_dry_run(parsed)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Unsupported JSON constant {name}")


def _build_report(
    source_version: str, stats: Mapping[str, _SectionTally], issues: List[Issue]
) -> DryRunReport:
    has_fatal = any(issue.severity == "error" and issue.entity_type == "root" for issue in issues)
    mapped_total = sum(entry.mapped for entry in stats.values())
    return DryRunReport(
        source_version=source_version,
        sections=tuple(stats[section].freeze() for section in STATS_ORDER),
        issues=tuple(issues),
        can_apply=not has_fatal and mapped_total > 0,
    )


# ---------------------------------------------------------------------------
# Array sections
# ---------------------------------------------------------------------------


def _map_array_section(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    rule: ArraySectionRule,
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    section = rule.section
    raw = source.get(section)
    if raw is not None and not isinstance(raw, list):
        _skip_malformed_section(section, "a list", stats, issues)
        return

    entries = raw or []
    stats.total = len(entries)
    mapped: List[Dict[str, Any]] = []

    for index, entry in enumerate(entries):
        if not is_plain_object(entry):
            stats.skipped += 1
            push_issue(
                issues,
                Issue(
                    code="ENTRY_NOT_OBJECT",
                    severity="warning",
                    entity_type=section,
                    entity_id=str(index),
                    message="Record is not an object and was skipped.",
                ),
            )
            continue

        if rule.required_field and _is_falsy(entry.get(rule.required_field)):
            stats.skipped += 1
            stats.blocked += 1
            push_issue(
                issues,
                Issue(
                    code="MISSING_REQUIRED_FIELD",
                    severity="error",
                    entity_type=section,
                    entity_id=str(index),
                    message=f"Required field '{rule.required_field}' is missing. Record was skipped.",
                ),
            )
            continue

        record = _normalize_common_record(entry, section, str(index), stats, issues)

        if _is_falsy(record.get(rule.id_field)):
            seeds = [record.get(field) for field in rule.seed_fields]
            record[rule.id_field] = deterministic_id(rule.id_prefix, [section, index, *seeds])
            stats.normalized += 1
            push_issue(
                issues,
                Issue(
                    code="ID_GENERATED",
                    severity="info",
                    entity_type=section,
                    entity_id=str(index),
                    message=f"Missing id in '{section}' was generated deterministically.",
                ),
            )

        mapped.append(record)

    target[section] = mapped
    stats.mapped = len(mapped)


# ---------------------------------------------------------------------------
# Keyed-object sections
# ---------------------------------------------------------------------------


def _map_settings(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    settings = source.get("settings")
    if settings is None:
        return
    if not is_plain_object(settings):
        _skip_malformed_section("settings", "an object", stats, issues)
        return
    stats.total = 1
    target["settings"] = dict(settings)
    stats.mapped = 1 if settings else 0


def _map_fixcost_overrides(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    overrides = source.get("fixcostOverrides")
    if not _is_object_section("fixcostOverrides", overrides, stats, issues):
        return
    stats.total = len(overrides)
    mapped: Dict[str, Any] = {}

    for fixcost_id, month_map in overrides.items():
        if not is_plain_object(month_map):
            stats.skipped += 1
            push_issue(
                issues,
                Issue(
                    code="ENTRY_NOT_OBJECT",
                    severity="warning",
                    entity_type="fixcostOverrides",
                    entity_id=str(fixcost_id),
                    message="Fixcost override is not a month map and was skipped.",
                ),
            )
            continue
        mapped[fixcost_id] = _normalize_month_keys(month_map, "fixcostOverrides", stats, issues)
        stats.mapped += 1

    target["fixcostOverrides"] = mapped


def _map_monthly_actuals(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    actuals = source.get("monthlyActuals")
    if not _is_object_section("monthlyActuals", actuals, stats, issues):
        return
    stats.total = len(actuals)
    mapped: Dict[str, Any] = {}

    for month, value in _normalize_month_keys(actuals, "monthlyActuals", stats, issues).items():
        if not is_plain_object(value):
            stats.skipped += 1
            push_issue(
                issues,
                Issue(
                    code="ENTRY_NOT_OBJECT",
                    severity="warning",
                    entity_type="monthlyActuals",
                    entity_id=month,
                    message="Monthly actuals entry is not an object and was skipped.",
                ),
            )
            continue
        record = dict(value)
        stats.normalized += _coerce_numeric_fields(record, ACTUALS_NUMERIC_FIELDS)
        mapped[month] = record

    target["monthlyActuals"] = mapped
    stats.mapped = len(mapped)


def _map_inventory(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    raw = source.get("inventory")
    present = _is_object_section("inventory", raw, stats, issues)
    inventory: Dict[str, Any] = dict(raw) if present else {}
    snapshots_raw = inventory.get("snapshots")
    snapshots_in = snapshots_raw if isinstance(snapshots_raw, list) else []
    if present:
        stats.total = len(snapshots_in)
    snapshots: List[Dict[str, Any]] = []

    for index, snapshot in enumerate(snapshots_in):
        if not is_plain_object(snapshot):
            stats.skipped += 1
            push_issue(
                issues,
                Issue(
                    code="ENTRY_NOT_OBJECT",
                    severity="warning",
                    entity_type="inventory.snapshots",
                    entity_id=str(index),
                    message="Inventory snapshot is not an object and was skipped.",
                ),
            )
            continue

        record, changed = normalize_month_in_entry(snapshot)
        if changed:
            _note_month_normalized(
                str(snapshot.get("month")),
                record["month"],
                "inventory.snapshots",
                stats,
                issues,
                entity_id=str(index),
            )

        items_in = record.get("items") if isinstance(record.get("items"), list) else []
        items: List[Dict[str, Any]] = []
        for item_index, item in enumerate(items_in):
            entity_id = f"{index}.{item_index}"
            if not is_plain_object(item):
                stats.skipped += 1
                push_issue(
                    issues,
                    Issue(
                        code="ENTRY_NOT_OBJECT",
                        severity="warning",
                        entity_type="inventory.snapshots.items",
                        entity_id=entity_id,
                        message="Snapshot item is not an object and was skipped.",
                    ),
                )
                continue
            normalized = _normalize_common_record(item, "inventory.snapshots.items", entity_id, stats, issues)
            if _is_falsy(normalized.get("sku")):
                stats.skipped += 1
                stats.blocked += 1
                push_issue(
                    issues,
                    Issue(
                        code="MISSING_REQUIRED_FIELD",
                        severity="error",
                        entity_type="inventory.snapshots.items",
                        entity_id=entity_id,
                        message="Snapshot item without SKU was skipped.",
                    ),
                )
                continue
            items.append(normalized)

        record["items"] = items
        snapshots.append(record)

    settings = inventory.get("settings")
    if is_plain_object(settings):
        settings = dict(settings)
        stats.normalized += _coerce_numeric_fields(settings, COMMON_NUMERIC_FIELDS)
        inventory["settings"] = settings
    elif settings is None:
        inventory["settings"] = {}

    inventory["snapshots"] = snapshots
    target["inventory"] = inventory
    stats.mapped = len(snapshots)


def _map_forecast(
    target: Dict[str, Any],
    source: Mapping[str, Any],
    stats: _SectionTally,
    issues: List[Issue],
) -> None:
    raw = source.get("forecast")
    present = _is_object_section("forecast", raw, stats, issues)
    forecast: Dict[str, Any] = dict(raw) if present else {}
    if present:
        stats.total = len(forecast)

    for bucket in ("forecastManual", "forecastImport"):
        sku_map = forecast.get(bucket)
        if not is_plain_object(sku_map):
            forecast[bucket] = {}
            continue
        normalized: Dict[str, Any] = {}
        for sku, month_map in sku_map.items():
            if not is_plain_object(month_map):
                normalized[sku] = month_map
                continue
            months = _normalize_month_keys(month_map, bucket, stats, issues)
            for month, value in months.items():
                if is_plain_object(value):
                    months[month] = _normalize_common_record(value, bucket, f"{sku}.{month}", stats, issues)
            normalized[sku] = months
        forecast[bucket] = normalized

    target["forecast"] = forecast
    stats.mapped = 1 if present and raw else 0


def _map_unknown_root_keys(
    target: Dict[str, Any], source: Mapping[str, Any], issues: List[Issue]
) -> None:
    known = known_root_keys()
    for key, value in source.items():
        if key in known:
            continue
        target["legacyMeta"]["unmapped"][key] = value
        push_issue(
            issues,
            Issue(
                code="UNMAPPED_ROOT_FIELD",
                severity="info",
                entity_type="root",
                entity_id=str(key),
                message=f"Unknown root field '{key}' was kept under legacyMeta.unmapped.",
            ),
        )


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------


def _normalize_common_record(
    entry: Mapping[str, Any],
    section: str,
    entity_id: str,
    stats: _SectionTally,
    issues: List[Issue],
) -> Dict[str, Any]:
    record, changed = normalize_month_in_entry(entry)
    if changed:
        _note_month_normalized(
            str(entry.get("month")), record["month"], section, stats, issues, entity_id=entity_id
        )
    stats.normalized += _coerce_numeric_fields(record, COMMON_NUMERIC_FIELDS)
    return record


def _coerce_numeric_fields(record: Dict[str, Any], fields: Tuple[str, ...]) -> int:
    changed = 0
    for field in fields:
        if field not in record:
            continue
        parsed = parse_locale_number(record[field])
        if parsed is None:
            continue
        if isinstance(record[field], str):
            record[field] = parsed
            changed += 1
    return changed


def _normalize_month_keys(
    mapping: Mapping[str, Any],
    section: str,
    stats: _SectionTally,
    issues: List[Issue],
) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in mapping.items():
        month = normalize_month_key(key)
        if month and month != key:
            _note_month_normalized(key, month, section, stats, issues)
            result[month] = value
        else:
            result[key] = value
    return result


def _note_month_normalized(
    original: str,
    normalized: str,
    section: str,
    stats: _SectionTally,
    issues: List[Issue],
    *,
    entity_id: Optional[str] = None,
) -> None:
    stats.normalized += 1
    push_issue(
        issues,
        Issue(
            code="MONTH_KEY_NORMALIZED",
            severity="info",
            entity_type=section,
            entity_id=entity_id if entity_id is not None else original,
            message=f"Month key '{original}' was normalized to '{normalized}'.",
        ),
    )


def _is_object_section(
    section: str, value: Any, stats: _SectionTally, issues: List[Issue]
) -> bool:
    if value is None:
        return False
    if not is_plain_object(value):
        _skip_malformed_section(section, "an object", stats, issues)
        return False
    return True


def _skip_malformed_section(
    section: str, expected: str, stats: _SectionTally, issues: List[Issue]
) -> None:
    stats.total = 1
    stats.skipped = 1
    push_issue(
        issues,
        Issue(
            code="ENTRY_NOT_OBJECT",
            severity="warning",
            entity_type=section,
            message=f"Section '{section}' is not {expected} and was skipped.",
        ),
    )


def _is_falsy(value: Any) -> bool:
    if value is None or value is False or value == "":
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0 or (isinstance(value, float) and math.isnan(value))
    return False
