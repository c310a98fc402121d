import sqlite3
import logging
from pathlib import Path
from typing import Optional

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import default_database_path


def get_db_connection(db_path: Optional[Path] = None):
    """Establishes a connection to the SQLite database."""
    target = Path(db_path) if db_path is not None else default_database_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(target), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Optional[Path] = None):
    """Initializes the database schema."""
    conn = get_db_connection(db_path)
    try:
        _ensure_workspace_schema(conn.cursor())
        conn.commit()
    finally:
        conn.close()


def _ensure_workspace_schema(cursor: sqlite3.Cursor) -> None:
    # One JSON document per workspace; rev backs the optimistic write check
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workspace_state (
            workspace_id TEXT PRIMARY KEY NOT NULL,
            data TEXT NOT NULL,
            rev INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_by TEXT
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS workspace_backups (
            backup_id TEXT PRIMARY KEY NOT NULL,
            workspace_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            source TEXT,
            data TEXT NOT NULL
        );
    """)

    cursor.execute("PRAGMA table_info(workspace_state)")
    state_columns = {row[1] for row in cursor.fetchall()}
    if 'updated_by' not in state_columns:
        cursor.execute("ALTER TABLE workspace_state ADD COLUMN updated_by TEXT")

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_workspace_backups_created "
        "ON workspace_backups(workspace_id, created_at)"
    )
