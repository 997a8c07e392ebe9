import asyncio
import json

import pytest
from sqlalchemy.exc import OperationalError

from excel_data.core.database import SessionLocal
from excel_data.core.exceptions import ConflictError, InvalidStateError, NotFoundError
from excel_data.models.audit import AuditEntry
from excel_data.models.row import ExcelDataRow
from excel_data.services import audit_service as audit_service_module
from excel_data.services import row_mutator as row_mutator_module
from excel_data.services.audit_service import ClientInfo
from excel_data.services.row_mutator import BulkUpdateItem, RowMutator, diff_columns


@pytest.fixture
def mutator():
    return RowMutator(max_attempts=3, backoff_seconds=0)


def audits(db, operation=None):
    query = db.query(AuditEntry)
    if operation:
        query = query.filter(AuditEntry.operation_type == operation)
    return query.all()


def test_diff_columns():
    assert diff_columns({"A": "1", "B": "2"}, {"A": "1", "B": "3", "C": "4"}) == ["B", "C"]
    assert diff_columns({"A": "1", "B": "2"}, {"A": "1"}) == ["B"]
    assert diff_columns({"A": "1"}, {"A": "1"}) == []


def test_update_bumps_version_and_audits(db, add_rows, mutator):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al", "Age": "30"})])[0]
    assert row.version == 1

    updated = asyncio.run(mutator.update_row(
        db, row.id, {"Name": "Alice", "Age": 30}, "editor",
        ClientInfo(ip="10.0.0.1", user_agent="pytest"), "typo",
    ))

    assert updated.version == 2
    assert json.loads(updated.row_data) == {"Name": "Alice", "Age": "30"}
    assert updated.modified_by == "editor"
    assert updated.modified_date is not None

    entries = audits(db, "UPDATE")
    assert len(entries) == 1
    assert json.loads(entries[0].changed_columns) == ["Name"]
    assert json.loads(entries[0].old_value) == {"Name": "Al", "Age": "30"}
    assert entries[0].user_ip == "10.0.0.1"
    assert entries[0].change_reason == "typo"
    assert entries[0].original_row_id == row.id


def test_noop_update_changes_nothing(db, add_rows, mutator):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]

    result = asyncio.run(mutator.update_row(db, row.id, {"Name": "Al"}, "editor"))

    assert result.version == 1
    assert result.modified_date is None
    assert audits(db) == []


def test_none_values_become_empty_strings(db, add_rows, mutator):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al", "Note": "x"})])[0]

    result = asyncio.run(mutator.update_row(db, row.id, {"Name": "Al", "Note": None}))

    assert json.loads(result.row_data) == {"Name": "Al", "Note": ""}


def test_update_missing_or_deleted_row(db, add_rows, mutator):
    deleted = add_rows("f.xlsx", "Data", [(2, {"A": "1"})], is_deleted=True)[0]

    with pytest.raises(NotFoundError):
        asyncio.run(mutator.update_row(db, 12345, {"A": "2"}))
    with pytest.raises(InvalidStateError):
        asyncio.run(mutator.update_row(db, deleted.id, {"A": "2"}))


def _concurrent_writer(monkeypatch, times):
    """Make diff_columns commit a competing update through a second session."""
    real_diff = row_mutator_module.diff_columns
    calls = {"count": 0}

    def racing_diff(old, new):
        calls["count"] += 1
        if calls["count"] <= times:
            other = SessionLocal()
            try:
                target = other.query(ExcelDataRow).one()
                target.row_data = json.dumps({"Name": f"concurrent-{calls['count']}"})
                other.commit()
            finally:
                other.close()
        return real_diff(old, new)

    monkeypatch.setattr(row_mutator_module, "diff_columns", racing_diff)
    return calls


def test_conflict_is_retried(db, add_rows, mutator, monkeypatch):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]
    calls = _concurrent_writer(monkeypatch, times=1)

    result = asyncio.run(mutator.update_row(db, row.id, {"Name": "Mine"}, "editor"))

    assert calls["count"] == 2
    # One bump from the competing writer, one from ours
    assert result.version == 3
    assert json.loads(result.row_data) == {"Name": "Mine"}
    entries = audits(db, "UPDATE")
    assert len(entries) == 1
    assert json.loads(entries[0].old_value) == {"Name": "concurrent-1"}


def test_conflict_exhaustion_raises(db, add_rows, mutator, monkeypatch):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]
    calls = _concurrent_writer(monkeypatch, times=10)

    with pytest.raises(ConflictError):
        asyncio.run(mutator.update_row(db, row.id, {"Name": "Mine"}))

    assert calls["count"] == 3
    db.expire_all()
    stored = db.get(ExcelDataRow, row.id)
    assert stored.version == 4
    assert json.loads(stored.row_data) == {"Name": "concurrent-3"}
    assert audits(db) == []


def test_soft_delete_is_idempotent(db, add_rows, mutator):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]

    first = asyncio.run(mutator.soft_delete_row(db, row.id, "remover"))
    second = asyncio.run(mutator.soft_delete_row(db, row.id, "remover"))

    assert first.is_deleted and second.is_deleted
    assert second.version == 2
    assert len(audits(db, "DELETE")) == 1

    with pytest.raises(NotFoundError):
        asyncio.run(mutator.soft_delete_row(db, 999, "remover"))


def test_bulk_update_reports_each_item(db, add_rows, mutator):
    first, second = add_rows("f.xlsx", "Data", [(2, {"A": "1"}), (3, {"A": "2"})])

    results = asyncio.run(mutator.bulk_update(db, [
        BulkUpdateItem(row_id=first.id, data={"A": "10"}),
        BulkUpdateItem(row_id=999, data={"A": "x"}),
        BulkUpdateItem(row_id=second.id, data={"A": "20"}, modified_by="someone"),
    ], default_modified_by="bulk"))

    assert [r.success for r in results] == [True, False, True]
    assert "999" in results[1].message
    assert results[0].row.modified_by == "bulk"
    assert results[2].row.modified_by == "someone"
    assert len(audits(db, "UPDATE")) == 2


def test_audit_failure_keeps_committed_update(db, add_rows, mutator, monkeypatch):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]

    def unserializable(value):
        raise ValueError("cannot encode audit value")

    monkeypatch.setattr(audit_service_module, "_to_json", unserializable)

    asyncio.run(mutator.update_row(db, row.id, {"Name": "Bo"}, "editor"))

    db.expire_all()
    stored = db.get(ExcelDataRow, row.id)
    assert json.loads(stored.row_data) == {"Name": "Bo"}
    assert stored.version == 2
    assert stored.modified_by == "editor"

    entries = audits(db)
    assert len(entries) == 1
    assert entries[0].is_success is False
    assert entries[0].operation_type == "UPDATE"
    assert "cannot encode" in entries[0].error_message


def test_audit_failure_keeps_committed_delete(db, add_rows, mutator, monkeypatch):
    row = add_rows("f.xlsx", "Data", [(2, {"Name": "Al"})])[0]

    def unserializable(value):
        raise ValueError("cannot encode audit value")

    monkeypatch.setattr(audit_service_module, "_to_json", unserializable)

    asyncio.run(mutator.soft_delete_row(db, row.id, "remover"))

    db.expire_all()
    stored = db.get(ExcelDataRow, row.id)
    assert stored.is_deleted is True
    assert stored.version == 2
    assert [e.is_success for e in audits(db, "DELETE")] == [False]


def test_bulk_update_survives_database_error(db, add_rows, mutator, monkeypatch):
    first, second = add_rows("f.xlsx", "Data", [(2, {"A": "1"}), (3, {"A": "2"})])
    real_commit = db.commit
    calls = {"count": 0}

    def locked_once():
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("UPDATE excel_data_rows", {}, Exception("database is locked"))
        real_commit()

    monkeypatch.setattr(db, "commit", locked_once)

    results = asyncio.run(mutator.bulk_update(db, [
        BulkUpdateItem(row_id=first.id, data={"A": "10"}),
        BulkUpdateItem(row_id=second.id, data={"A": "20"}),
    ], default_modified_by="bulk"))

    assert [r.success for r in results] == [False, True]
    assert str(first.id) in results[0].message

    db.expire_all()
    assert json.loads(db.get(ExcelDataRow, first.id).row_data) == {"A": "1"}
    assert json.loads(db.get(ExcelDataRow, second.id).row_data) == {"A": "20"}
    assert len(audits(db, "UPDATE")) == 1
