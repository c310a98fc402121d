"""Apply a confirmed dry run bundle to the live workspace.

Applying is the only step of the migration that performs I/O.  The sequence is
always: load the current workspace, back it up, compute the next state, save
it.  Because the backup is written before the save, a failing save leaves the
live workspace untouched with a recovery snapshot already on record.

Two modes are supported:

``replace_workspace``
    The mapped state replaces the workspace wholesale.

``merge_upsert``
    Existing data wins.  Records from the import are only added when their
    stable key is not present yet; every divergence that was *not* imported is
    reported as a ``MERGE_CONFLICT_EXISTING_WINS`` warning.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from data_paths import DEFAULT_WORKSPACE_ID
from services.backup import BackupCreator, BackupError, create_workspace_backup
from services.legacy_mapper import run_legacy_dry_run_from_json
from services.migration_types import (
    APPLY_MODES,
    REPLACE_WORKSPACE,
    ApplyRejectedError,
    ApplyResult,
    DryRunBundle,
    ImportMode,
    Issue,
    MigrationError,
    ResolvedApplication,
)
from services.migration_utils import deep_clone, is_plain_object, json_deep_equal, push_issue, seed_text
from services.storage import SqliteStorageAdapter, StorageAdapter, StorageError
from services.workspace_state import OBJECT_SECTIONS, SCHEMA_VERSION, ensure_app_state_v2, stamp_import_history

LOGGER = logging.getLogger(__name__)

__all__ = ["apply_dry_run_bundle", "main", "resolve_dry_run_application"]

BACKUP_SOURCE = "migration:pre-apply"

# Candidate fields tried in order when matching records between workspaces
MERGE_KEY_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("products", ("sku", "id")),
    ("suppliers", ("id", "name")),
    ("productCategories", ("id", "name")),
    ("pos", ("id", "poNo", "poNumber")),
    ("fos", ("id", "foNo")),
    ("payments", ("id", "paymentInternalId")),
    ("fixcosts", ("id", "name")),
    ("incomings", ("month", "id")),
    ("extras", ("id", "date", "label")),
    ("dividends", ("id", "date")),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_dry_run_application(
    bundle: DryRunBundle,
    mode: ImportMode,
    current_state: Any,
    *,
    applied_at: Optional[str] = None,
    history_id: Optional[str] = None,
) -> ResolvedApplication:
    """Compute the next workspace state for ``mode`` without performing any I/O."""

    _validate_mode(mode)
    applied_at = applied_at or _now_iso()
    event = {
        "id": history_id or f"import-{uuid.uuid4().hex[:12]}",
        "appliedAt": applied_at,
        "mode": mode,
        "sourceVersion": bundle.report.source_version,
    }

    if mode == REPLACE_WORKSPACE:
        next_state = ensure_app_state_v2(deep_clone(bundle.mapped_state))
        return ResolvedApplication(
            next_state=stamp_import_history(next_state, event),
            report=bundle.report,
        )

    merged, issues = _merge_upsert(
        ensure_app_state_v2(deep_clone(current_state)),
        ensure_app_state_v2(deep_clone(bundle.mapped_state)),
    )
    return ResolvedApplication(
        next_state=stamp_import_history(merged, event),
        report=bundle.report.with_issues(issues),
    )


def apply_dry_run_bundle(
    bundle: DryRunBundle,
    mode: ImportMode,
    adapter: StorageAdapter,
    *,
    create_backup: Optional[BackupCreator] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> ApplyResult:
    """Back up the current workspace and persist the resolved next state.

    Raises :class:`ApplyRejectedError` before any I/O when the dry run deemed
    the input unusable.  Storage and backup failures propagate unchanged.
    """

    if not bundle.report.can_apply:
        raise ApplyRejectedError("The dry run report is not applyable.")
    _validate_mode(mode)

    create_backup = create_backup or create_workspace_backup

    current = adapter.load()
    backup_id = create_backup(BACKUP_SOURCE, ensure_app_state_v2(current))
    LOGGER.info("Created pre-apply backup %s", backup_id)

    applied_at = clock().isoformat() if clock is not None else _now_iso()
    resolved = resolve_dry_run_application(bundle, mode, current, applied_at=applied_at)

    adapter.save(resolved.next_state, {"source": f"migration:{mode}"})

    conflicts = len(resolved.report.issues) - len(bundle.report.issues)
    LOGGER.info("Applied dry run in %s mode (%d merge conflicts)", mode, conflicts)
    return ApplyResult(
        mode=mode,
        backup_id=backup_id,
        report=resolved.report,
        applied_at=applied_at,
    )


def _validate_mode(mode: str) -> None:
    if mode not in APPLY_MODES:
        raise ValueError(f"Unsupported apply mode '{mode}'. Expected one of: {', '.join(APPLY_MODES)}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------


def _merge_upsert(
    current: Dict[str, Any], incoming: Dict[str, Any]
) -> Tuple[Dict[str, Any], List[Issue]]:
    issues: List[Issue] = []
    merged = ensure_app_state_v2({**incoming, **current})

    for section, key_fields in MERGE_KEY_FIELDS:
        merged[section] = _merge_array_existing_wins(
            current.get(section), incoming.get(section), key_fields, section, issues
        )

    for section in OBJECT_SECTIONS:
        merged[section] = _merge_object_existing_wins(current.get(section), incoming.get(section))

    current_meta = current["legacyMeta"]
    incoming_meta = incoming["legacyMeta"]
    merged["legacyMeta"] = {
        "importHistory": list(current_meta["importHistory"]),
        "unmapped": {**incoming_meta["unmapped"], **current_meta["unmapped"]},
    }
    merged["schemaVersion"] = SCHEMA_VERSION
    return merged, issues


def _stable_entity_key(entry: Mapping[str, Any], fields: Sequence[str], fallback: str) -> str:
    for field in fields:
        value = entry.get(field)
        if value is None:
            continue
        normalized = seed_text(value).strip()
        if normalized:
            return f"{field}:{normalized.lower()}"
    return f"fallback:{fallback}"


def _merge_array_existing_wins(
    current_value: Any,
    incoming_value: Any,
    key_fields: Sequence[str],
    section: str,
    issues: List[Issue],
) -> List[Any]:
    current = current_value if isinstance(current_value, list) else []
    incoming = incoming_value if isinstance(incoming_value, list) else []

    merged: List[Any] = list(current)
    index_by_key: Dict[str, int] = {}
    for index, entry in enumerate(merged):
        if not is_plain_object(entry):
            continue
        index_by_key[_stable_entity_key(entry, key_fields, f"{section}:{index}")] = index

    for index, entry in enumerate(incoming):
        if not is_plain_object(entry):
            continue
        key = _stable_entity_key(entry, key_fields, f"{section}:incoming:{index}")
        existing_index = index_by_key.get(key)
        if existing_index is None:
            merged.append(entry)
            index_by_key[key] = len(merged) - 1
            continue
        if not json_deep_equal(merged[existing_index], entry):
            push_issue(
                issues,
                Issue(
                    code="MERGE_CONFLICT_EXISTING_WINS",
                    severity="warning",
                    entity_type=section,
                    entity_id=key,
                    message=f"Conflict in '{section}' for {key}. The existing record was kept.",
                ),
            )

    return merged


def _merge_object_existing_wins(current_value: Any, incoming_value: Any) -> Any:
    if isinstance(current_value, list) or isinstance(incoming_value, list):
        return current_value if current_value is not None else incoming_value

    current = current_value if is_plain_object(current_value) else {}
    incoming = incoming_value if is_plain_object(incoming_value) else {}
    merged: Dict[str, Any] = {**incoming, **current}

    for key in merged:
        current_child = current.get(key)
        incoming_child = incoming.get(key)
        if is_plain_object(current_child) and is_plain_object(incoming_child):
            merged[key] = _merge_object_existing_wins(current_child, incoming_child)

    return merged


# ---------------------------------------------------------------------------
# Command line entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry-point used by ``migrate.py`` for a small CLI."""

    parser = argparse.ArgumentParser(
        description="Dry run (and optionally apply) a legacy workspace export."
    )
    parser.add_argument("source", type=Path, help="Path to the legacy JSON export")
    parser.add_argument(
        "--apply",
        choices=APPLY_MODES,
        default=None,
        help="Apply the dry run to the workspace using the given mode",
    )
    parser.add_argument(
        "--workspace",
        default=DEFAULT_WORKSPACE_ID,
        help=f"Workspace to apply to (default: {DEFAULT_WORKSPACE_ID})",
    )
    parser.add_argument("--db", type=Path, default=None, help="SQLite database to use")
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        text = args.source.expanduser().read_bytes()
    except OSError as exc:
        print(f"Could not read {args.source}: {exc}", file=sys.stderr)
        return 1

    bundle = run_legacy_dry_run_from_json(text)
    print(json.dumps(bundle.report.to_dict(), indent=2))

    if args.apply is None:
        return 0 if bundle.report.can_apply else 1

    adapter = SqliteStorageAdapter(args.workspace, db_path=args.db)

    def _backup(source: str, state: Mapping[str, Any]) -> str:
        return create_workspace_backup(source, state, workspace_id=args.workspace, db_path=args.db)

    try:
        result = apply_dry_run_bundle(bundle, args.apply, adapter, create_backup=_backup)
    except (MigrationError, StorageError, BackupError) as exc:
        print(f"Apply failed: {exc}", file=sys.stderr)
        return 1

    print(f"Applied in {result.mode} mode at {result.applied_at}.")
    print(f"Pre-apply backup: {result.backup_id}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI behavior
    raise SystemExit(main())
