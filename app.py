import os
import uuid
import traceback
from collections import OrderedDict
from threading import Lock
from typing import Any, Mapping, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from data_paths import DEFAULT_WORKSPACE_ID
from services.backup import BackupError, create_workspace_backup, list_workspace_backups
from services.legacy_mapper import run_legacy_dry_run_from_json
from services.migration_apply import apply_dry_run_bundle
from services.migration_types import APPLY_MODES, ApplyRejectedError, DryRunBundle
from services.storage import SqliteStorageAdapter, StorageConflictError, StorageError

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
MAX_PENDING_DRY_RUNS = 10

app = Flask(__name__)
app.json.sort_keys = False
app.config['DATABASE_PATH'] = os.getenv('PLANNER_DATABASE_PATH') or None
app.config['WORKSPACE_ID'] = DEFAULT_WORKSPACE_ID
app.secret_key = os.urandom(24)

# Dry run bundles waiting for confirmation, oldest first
_pending_dry_runs: "OrderedDict[str, DryRunBundle]" = OrderedDict()
_pending_lock = Lock()


def _workspace_id() -> str:
    return app.config.get('WORKSPACE_ID') or DEFAULT_WORKSPACE_ID


def _database_path() -> Optional[str]:
    return app.config.get('DATABASE_PATH') or None


def get_storage_adapter() -> SqliteStorageAdapter:
    return SqliteStorageAdapter(_workspace_id(), db_path=_database_path())


def _create_backup(source: str, state: Mapping[str, Any]) -> str:
    return create_workspace_backup(
        source,
        state,
        workspace_id=_workspace_id(),
        db_path=_database_path(),
    )


def _park_dry_run(bundle: DryRunBundle) -> str:
    dry_run_id = uuid.uuid4().hex
    with _pending_lock:
        _pending_dry_runs[dry_run_id] = bundle
        while len(_pending_dry_runs) > MAX_PENDING_DRY_RUNS:
            evicted, _ = _pending_dry_runs.popitem(last=False)
            app.logger.info("Discarded unconfirmed dry run %s", evicted)
    return dry_run_id


def _take_dry_run(dry_run_id: str) -> Optional[DryRunBundle]:
    with _pending_lock:
        return _pending_dry_runs.pop(dry_run_id, None)


def reset_pending_dry_runs() -> None:
    with _pending_lock:
        _pending_dry_runs.clear()


@app.route('/api/migration/dry-run', methods=['POST'])
def migration_dry_run():
    """Map an uploaded legacy export and park the result for confirmation."""
    if 'file' in request.files:
        upload = request.files['file']
        if upload.filename == '':
            return jsonify({"status": "error", "message": "No file selected."}), 400
        payload = upload.stream.read()
    else:
        payload = request.get_data()

    if not payload:
        return jsonify({"status": "error", "message": "No JSON payload provided."}), 400

    bundle = run_legacy_dry_run_from_json(payload)
    dry_run_id = _park_dry_run(bundle)
    app.logger.info(
        "Dry run %s prepared (canApply=%s, %d issues)",
        dry_run_id,
        bundle.report.can_apply,
        len(bundle.report.issues),
    )
    return jsonify({
        "status": "ok",
        "dryRunId": dry_run_id,
        "report": bundle.report.to_dict(),
    }), 200


@app.route('/api/migration/apply', methods=['POST'])
def migration_apply():
    """Apply a previously prepared dry run to the workspace."""
    payload = request.get_json(silent=True) or {}
    dry_run_id = str(payload.get('dryRunId') or '').strip()
    mode = str(payload.get('mode') or '').strip()

    if mode not in APPLY_MODES:
        return jsonify({
            "status": "error",
            "message": f"Invalid mode. Expected one of: {', '.join(APPLY_MODES)}.",
        }), 400

    bundle = _take_dry_run(dry_run_id) if dry_run_id else None
    if bundle is None:
        return jsonify({"status": "error", "message": "Unknown or expired dry run."}), 404

    try:
        result = apply_dry_run_bundle(
            bundle,
            mode,
            get_storage_adapter(),
            create_backup=_create_backup,
        )
    except ApplyRejectedError as exc:
        app.logger.warning("Apply rejected: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 400
    except StorageConflictError as exc:
        app.logger.warning("Apply conflicted with another writer: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 409
    except (StorageError, BackupError) as exc:
        app.logger.error("Apply failed: %s", exc)
        app.logger.error(traceback.format_exc())
        return jsonify({
            "status": "error",
            "message": "Failed to apply the migration. The workspace was not changed.",
        }), 500

    return jsonify({"status": "ok", "result": result.to_dict()}), 200


@app.route('/api/migration/backups', methods=['GET'])
def migration_backups():
    try:
        backups = list_workspace_backups(workspace_id=_workspace_id(), db_path=_database_path())
    except BackupError as exc:
        app.logger.error("Listing backups failed: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 500
    return jsonify({"status": "ok", "backups": backups}), 200


@app.route('/api/migration/history', methods=['GET'])
def migration_history():
    try:
        state = get_storage_adapter().load()
    except StorageError as exc:
        app.logger.error("Loading workspace failed: %s", exc)
        return jsonify({"status": "error", "message": str(exc)}), 500
    return jsonify({
        "status": "ok",
        "importHistory": state["legacyMeta"]["importHistory"],
    }), 200


if __name__ == '__main__':
    app.run(host='127.0.0.1', port=int(os.getenv('PORT', '5000')))
