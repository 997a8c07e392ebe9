import json
from datetime import datetime, timedelta

import pytest

from excel_data.core.exceptions import InternalError, InvalidArgumentError, NotFoundError
from excel_data.models.row import ExcelDataRow
from excel_data.schemas.comparison import ENTIRE_ROW, DifferenceType
from excel_data.services.comparison_service import comparison_service, compare_row_sets


def row(row_index, data, raw=None):
    return ExcelDataRow(
        file_name="f.xlsx",
        sheet_name="Data",
        row_index=row_index,
        row_data=raw if raw is not None else json.dumps(data),
    )


def test_worked_example():
    a = [row(2, {"Name": "Al"}), row(3, {"Name": "Bo"})]
    b = [row(2, {"Name": "Alice"}), row(4, {"Name": "Cy"})]

    differences, summary = compare_row_sets(a, b)

    assert [(d.row_index, d.column_name, d.type) for d in differences] == [
        (2, "Name", DifferenceType.MODIFIED),
        (3, ENTIRE_ROW, DifferenceType.DELETED),
        (4, ENTIRE_ROW, DifferenceType.ADDED),
    ]
    assert differences[0].old_value == "Al"
    assert differences[0].new_value == "Alice"
    assert differences[1].old_value == a[1].row_data
    assert differences[1].new_value is None
    assert differences[2].old_value is None
    assert differences[2].new_value == b[1].row_data

    assert summary.total_rows == 2
    assert summary.modified_rows == 1
    assert summary.added_rows == 1
    assert summary.deleted_rows == 1
    assert summary.unchanged_rows == 0


def test_identical_rows_are_unchanged():
    a = [row(2, {"A": "1", "B": "2"}), row(3, {"A": "3"})]
    b = [row(2, {"A": "1", "B": "2"}), row(3, {"A": "3"})]

    differences, summary = compare_row_sets(a, b)

    assert differences == []
    assert summary.total_rows == 2
    assert summary.unchanged_rows == 2


def test_unmatched_rows_yield_only_whole_row_differences():
    a = [row(5, {"A": "x", "B": "y"})]
    b = [row(6, {"A": "x", "B": "y"})]

    differences, summary = compare_row_sets(a, b)

    assert len(differences) == 2
    assert all(d.column_name == ENTIRE_ROW for d in differences)
    assert summary.modified_rows == 0


def test_column_diff_covers_both_key_sets():
    a = [row(2, {"Keep": "1", "Gone": "old", "Same": "s"})]
    b = [row(2, {"Keep": "2", "Same": "s", "New": "n"})]

    differences, summary = compare_row_sets(a, b)

    assert [(d.column_name, d.old_value, d.new_value) for d in differences] == [
        ("Keep", "1", "2"),
        ("Gone", "old", None),
        ("New", None, "n"),
    ]
    assert all(d.type == DifferenceType.MODIFIED for d in differences)
    # Several differences on one row count it once
    assert summary.modified_rows == 1
    assert summary.unchanged_rows == 0


def test_duplicate_indexes_use_first_row():
    a = [row(2, {"A": "1"}), row(2, {"A": "ignored"})]
    b = [row(2, {"A": "1"})]

    differences, summary = compare_row_sets(a, b)

    assert differences == []
    assert summary.total_rows == 2


def test_malformed_row_fails_whole_comparison():
    a = [row(2, None, raw="{not json")]
    b = [row(2, {"A": "1"})]

    with pytest.raises(InternalError):
        compare_row_sets(a, b)


def test_whole_row_gate_skips_identical_text_without_decoding():
    a = [row(2, None, raw="{not json")]
    b = [row(2, None, raw="{not json")]

    differences, summary = compare_row_sets(a, b, whole_row_gate=True)

    assert differences == []
    assert summary.unchanged_rows == 1


def test_compare_files_requires_active_files(db, register_file):
    register_file("one.xlsx", b"x")

    with pytest.raises(NotFoundError):
        comparison_service.compare_files(db, "one.xlsx", "missing.xlsx")
    with pytest.raises(InvalidArgumentError):
        comparison_service.compare_files(db, "", "one.xlsx")


def test_compare_files_filters_sheets_and_deleted_rows(db, register_file, add_rows):
    register_file("one.xlsx", b"x")
    register_file("two.xlsx", b"x")
    add_rows("one.xlsx", "Data", [(2, {"A": "1"}), (3, {"A": "2"})])
    add_rows("one.xlsx", "Other", [(2, {"A": "zzz"})])
    add_rows("two.xlsx", "Data", [(2, {"A": "1"}), (3, {"A": "3"})])
    add_rows("two.xlsx", "Data", [(4, {"A": "old"})], is_deleted=True)

    result = comparison_service.compare_files(db, "one.xlsx", "two.xlsx", "Data")

    assert result.file1_name == "one.xlsx"
    assert result.file2_name == "two.xlsx"
    assert [(d.row_index, d.old_value, d.new_value) for d in result.differences] == [(3, "2", "3")]
    assert result.summary.unchanged_rows == 1


def test_compare_files_without_sheet_uses_first_sheet(db, register_file, add_rows):
    register_file("one.xlsx", b"x")
    register_file("two.xlsx", b"x")
    add_rows("one.xlsx", "A", [(2, {"V": "same"})])
    add_rows("one.xlsx", "B", [(2, {"V": "same"})])
    add_rows("two.xlsx", "A", [(2, {"V": "same"})])
    add_rows("two.xlsx", "B", [(2, {"V": "CHANGED"})])

    first_sheets = comparison_service.compare_files(db, "one.xlsx", "two.xlsx")
    second_sheets = comparison_service.compare_files(db, "one.xlsx", "two.xlsx", "B")

    assert first_sheets.differences == []
    assert first_sheets.summary.total_rows == 1
    assert first_sheets.summary.unchanged_rows == 1
    assert [(d.old_value, d.new_value) for d in second_sheets.differences] == [("same", "CHANGED")]


def test_compare_versions_validates_dates(db, register_file):
    register_file("one.xlsx", b"x")
    now = datetime(2024, 1, 1, 12, 0)

    with pytest.raises(InvalidArgumentError):
        comparison_service.compare_versions(db, "one.xlsx", now, now)
    with pytest.raises(InvalidArgumentError):
        comparison_service.compare_versions(db, "one.xlsx", now, now - timedelta(hours=1))


def test_compare_versions_uses_time_slices(db, register_file, add_rows):
    register_file("one.xlsx", b"x")
    t0 = datetime(2024, 1, 1, 8, 0)
    add_rows("one.xlsx", "Data", [(2, {"A": "1"})], created_date=t0)
    add_rows("one.xlsx", "Data", [(3, {"A": "2"})], created_date=t0, modified_date=t0 + timedelta(hours=2))
    add_rows("one.xlsx", "Data", [(4, {"A": "3"})], created_date=t0 + timedelta(hours=3))

    result = comparison_service.compare_versions(
        db, "one.xlsx", t0 + timedelta(hours=1), t0 + timedelta(hours=4)
    )

    assert result.file1_name == "one.xlsx (2024-01-01 09:00)"
    assert result.file2_name == "one.xlsx (2024-01-01 12:00)"
    # Rows 3 and 4 only exist in the later slice
    assert [(d.row_index, d.type) for d in result.differences] == [
        (3, DifferenceType.ADDED),
        (4, DifferenceType.ADDED),
    ]
    assert result.summary.unchanged_rows == 1
    assert result.summary.total_rows == 3


def test_row_history_includes_deleted_generations(db, add_rows):
    old = add_rows("one.xlsx", "Data", [(2, {"A": "old"})], is_deleted=True)[0]
    current = add_rows("one.xlsx", "Data", [(2, {"A": "new"})])[0]
    add_rows("one.xlsx", "Data", [(3, {"A": "other"})])

    history = comparison_service.get_row_history(db, current.id)

    assert {h.id for h in history} == {old.id, current.id}
    flags = {h.id: (h.is_current_version, h.is_deleted) for h in history}
    assert flags[current.id] == (True, False)
    assert flags[old.id] == (False, True)


def test_row_history_rejects_bad_ids(db):
    with pytest.raises(InvalidArgumentError):
        comparison_service.get_row_history(db, 0)
    with pytest.raises(NotFoundError):
        comparison_service.get_row_history(db, 999)


def test_changes_and_history_listings(db, add_rows):
    t0 = datetime(2024, 1, 1, 8, 0)
    add_rows("one.xlsx", "Data", [(2, {"A": "x" * 150})], created_date=t0)
    add_rows("one.xlsx", "Data", [(3, {"A": "y"})], created_date=t0, modified_date=t0 + timedelta(hours=1))

    changes = comparison_service.get_changes(db, "one.xlsx", from_date=t0)
    assert [c.row_index for c in changes] == [3]

    history = comparison_service.get_change_history(db, "one.xlsx")
    assert [h.row_index for h in history] == [3, 2]
    assert history[0].has_modification is True
    assert history[1].data_preview.endswith("...")
    assert len(history[1].data_preview) == 103
