"""Storage adapters that load and persist the workspace document."""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from data_paths import DEFAULT_WORKSPACE_ID
from database import get_db_connection, init_db
from services.workspace_state import ensure_app_state_v2

LOGGER = logging.getLogger(__name__)

__all__ = [
    "SqliteStorageAdapter",
    "StorageAdapter",
    "StorageConflictError",
    "StorageError",
]


class StorageError(RuntimeError):
    """Raised when the workspace document cannot be read or written."""


class StorageConflictError(StorageError):
    """Raised when another writer changed the workspace since it was loaded."""


class StorageAdapter(Protocol):
    """Minimal persistence contract used by the migration apply step."""

    def load(self) -> Dict[str, Any]:
        ...

    def save(self, state: Mapping[str, Any], meta: Mapping[str, str]) -> None:
        ...


class SqliteStorageAdapter:
    """Persist one workspace document per ``workspace_id`` in SQLite.

    ``load`` remembers the revision it read; ``save`` only succeeds when the
    stored revision is still the same, which keeps concurrent writers from
    silently overwriting each other.
    """

    def __init__(
        self,
        workspace_id: str = DEFAULT_WORKSPACE_ID,
        *,
        db_path: Optional[Path] = None,
    ) -> None:
        self.workspace_id = workspace_id
        self.db_path = db_path
        self._last_rev: Optional[int] = None

    def load(self) -> Dict[str, Any]:
        try:
            init_db(self.db_path)
            conn = get_db_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT data, rev FROM workspace_state WHERE workspace_id = ?",
                    (self.workspace_id,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            LOGGER.error("Failed to load workspace %s: %s", self.workspace_id, exc)
            raise StorageError("Failed to load workspace.") from exc

        if row is None:
            self._last_rev = None
            return ensure_app_state_v2(None)

        self._last_rev = int(row["rev"])
        try:
            data = json.loads(row["data"])
        except json.JSONDecodeError:
            LOGGER.warning("Stored workspace %s is not valid JSON; treating it as empty", self.workspace_id)
            data = None
        return ensure_app_state_v2(data)

    def save(self, state: Mapping[str, Any], meta: Mapping[str, str]) -> None:
        payload = json.dumps(ensure_app_state_v2(state), sort_keys=True)
        updated_at = datetime.now(timezone.utc).isoformat()
        updated_by = meta.get("source") or "storage:save"

        try:
            init_db(self.db_path)
            conn = get_db_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT rev FROM workspace_state WHERE workspace_id = ?",
                    (self.workspace_id,),
                ).fetchone()
                current_rev = int(row["rev"]) if row is not None else None
                if current_rev != self._last_rev:
                    raise StorageConflictError(
                        f"Workspace '{self.workspace_id}' changed since it was loaded "
                        f"(expected revision {self._last_rev}, found {current_rev})."
                    )

                next_rev = (current_rev or 0) + 1
                if row is None:
                    conn.execute(
                        """
                        INSERT INTO workspace_state (workspace_id, data, rev, updated_at, updated_by)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (self.workspace_id, payload, next_rev, updated_at, updated_by),
                    )
                else:
                    cursor = conn.execute(
                        """
                        UPDATE workspace_state
                        SET data = ?, rev = ?, updated_at = ?, updated_by = ?
                        WHERE workspace_id = ? AND rev = ?
                        """,
                        (payload, next_rev, updated_at, updated_by, self.workspace_id, current_rev),
                    )
                    if cursor.rowcount == 0:
                        raise StorageConflictError(
                            f"Workspace '{self.workspace_id}' changed while saving."
                        )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.IntegrityError as exc:
            raise StorageConflictError(
                f"Workspace '{self.workspace_id}' was created by another writer."
            ) from exc
        except sqlite3.Error as exc:
            LOGGER.error("Failed to save workspace %s: %s", self.workspace_id, exc)
            raise StorageError("Failed to save workspace.") from exc

        self._last_rev = next_rev
        LOGGER.info("Saved workspace %s at revision %d (%s)", self.workspace_id, next_rev, updated_by)
