import pytest
from dateutil.parser import isoparse

from services import backup as backup_service
from services.backup import (
    BackupError,
    create_workspace_backup,
    list_workspace_backups,
    load_workspace_backup,
)


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "planner.db"


def test_create_and_load_backup(db_path):
    state = {"products": [{"id": "p1", "sku": "SKU-1"}]}

    backup_id = create_workspace_backup("migration:pre-apply", state, workspace_id="main", db_path=db_path)

    assert backup_id.startswith("backup-")
    restored = load_workspace_backup(backup_id, workspace_id="main", db_path=db_path)
    assert restored["products"] == [{"id": "p1", "sku": "SKU-1"}]
    assert restored["schemaVersion"] == 2


def test_list_backups_reports_metadata(db_path):
    backup_id = create_workspace_backup("migration:pre-apply", {}, workspace_id="main", db_path=db_path)

    backups = list_workspace_backups(workspace_id="main", db_path=db_path)

    assert len(backups) == 1
    entry = backups[0]
    assert entry["id"] == backup_id
    assert entry["source"] == "migration:pre-apply"
    assert isoparse(entry["createdAt"]).tzinfo is not None


def test_backups_are_pruned_to_most_recent(db_path):
    created = [
        create_workspace_backup(f"run-{index}", {}, workspace_id="main", db_path=db_path)
        for index in range(backup_service.MAX_BACKUPS + 2)
    ]

    backups = list_workspace_backups(workspace_id="main", db_path=db_path)

    assert len(backups) == backup_service.MAX_BACKUPS
    assert backups[0]["id"] == created[-1]
    assert {entry["id"] for entry in backups} == set(created[2:])
    with pytest.raises(BackupError):
        load_workspace_backup(created[0], workspace_id="main", db_path=db_path)


def test_pruning_is_per_workspace(db_path):
    other = create_workspace_backup("other", {}, workspace_id="other", db_path=db_path)
    for index in range(3):
        create_workspace_backup(f"run-{index}", {}, workspace_id="main", db_path=db_path, limit=2)

    assert len(list_workspace_backups(workspace_id="main", db_path=db_path)) == 2
    assert [entry["id"] for entry in list_workspace_backups(workspace_id="other", db_path=db_path)] == [other]


def test_loading_unknown_backup_raises(db_path):
    with pytest.raises(BackupError):
        load_workspace_backup("backup-missing", workspace_id="main", db_path=db_path)


def test_sqlite_failures_are_wrapped(tmp_path):
    # A directory cannot be opened as a database file
    with pytest.raises(BackupError):
        list_workspace_backups(workspace_id="main", db_path=tmp_path)
