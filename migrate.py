"""Command-line interface for migrating legacy workspace exports."""
from __future__ import annotations

from services.migration_apply import main


if __name__ == "__main__":  # pragma: no cover - thin wrapper
    raise SystemExit(main())
