"""Helpers for snapshotting workspace documents before they are overwritten."""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from data_paths import DEFAULT_WORKSPACE_ID
from database import get_db_connection, init_db
from services.workspace_state import ensure_app_state_v2

LOGGER = logging.getLogger(__name__)

__all__ = [
    "BackupCreator",
    "BackupError",
    "MAX_BACKUPS",
    "create_workspace_backup",
    "list_workspace_backups",
    "load_workspace_backup",
]

MAX_BACKUPS = 20


class BackupError(RuntimeError):
    """Raised when a workspace backup cannot be written or read."""


class BackupCreator(Protocol):
    """Callable protocol used to snapshot the current workspace."""

    def __call__(self, source: str, state: Mapping[str, Any]) -> str:
        ...


def create_workspace_backup(
    source: str,
    state: Mapping[str, Any],
    *,
    workspace_id: str = DEFAULT_WORKSPACE_ID,
    db_path: Optional[Path] = None,
    limit: int = MAX_BACKUPS,
) -> str:
    """Store ``state`` in the backup log and return the new backup id.

    Only the ``limit`` most recent backups per workspace are kept.
    """

    backup_id = f"backup-{uuid.uuid4().hex}"
    created_at = datetime.now(timezone.utc).isoformat()
    payload = json.dumps(ensure_app_state_v2(state), sort_keys=True)

    try:
        init_db(db_path)
        conn = get_db_connection(db_path)
        try:
            conn.execute(
                """
                INSERT INTO workspace_backups (backup_id, workspace_id, created_at, source, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (backup_id, workspace_id, created_at, source, payload),
            )
            conn.execute(
                """
                DELETE FROM workspace_backups
                WHERE workspace_id = ?
                  AND backup_id NOT IN (
                    SELECT backup_id FROM workspace_backups
                    WHERE workspace_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ?
                  )
                """,
                (workspace_id, workspace_id, limit),
            )
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        LOGGER.error("Failed to write workspace backup: %s", exc)
        raise BackupError("Failed to create workspace backup.") from exc

    LOGGER.info("Created workspace backup %s (%s)", backup_id, source)
    return backup_id


def list_workspace_backups(
    *, workspace_id: str = DEFAULT_WORKSPACE_ID, db_path: Optional[Path] = None
) -> List[Dict[str, Any]]:
    """Return backup metadata, most recent first."""

    try:
        init_db(db_path)
        conn = get_db_connection(db_path)
        try:
            rows = conn.execute(
                """
                SELECT backup_id, created_at, source FROM workspace_backups
                WHERE workspace_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (workspace_id,),
            ).fetchall()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise BackupError("Failed to read workspace backups.") from exc

    return [
        {"id": row["backup_id"], "createdAt": row["created_at"], "source": row["source"]}
        for row in rows
    ]


def load_workspace_backup(
    backup_id: str,
    *,
    workspace_id: str = DEFAULT_WORKSPACE_ID,
    db_path: Optional[Path] = None,
) -> Dict[str, Any]:
    try:
        init_db(db_path)
        conn = get_db_connection(db_path)
        try:
            row = conn.execute(
                "SELECT data FROM workspace_backups WHERE backup_id = ? AND workspace_id = ?",
                (backup_id, workspace_id),
            ).fetchone()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        raise BackupError("Failed to read workspace backup.") from exc

    if row is None:
        raise BackupError(f"Backup '{backup_id}' was not found.")
    return ensure_app_state_v2(json.loads(row["data"]))
