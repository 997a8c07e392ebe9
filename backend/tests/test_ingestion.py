import json
from datetime import datetime

import pytest

from excel_data.core.exceptions import ExternalFailureError, InvalidArgumentError, NotFoundError
from excel_data.models.row import ExcelDataRow
from excel_data.services.excel_service import excel_service
from excel_data.services.spreadsheet_reader import build_headers, cell_to_string, read_sheet


def live_rows(db, file_name):
    return db.query(ExcelDataRow).filter(
        ExcelDataRow.file_name == file_name, ExcelDataRow.is_deleted == False  # noqa: E712
    ).order_by(ExcelDataRow.row_index).all()


def test_cell_to_string():
    assert cell_to_string(None) == ""
    assert cell_to_string(5.0) == "5"
    assert cell_to_string(2.5) == "2.5"
    assert cell_to_string(float("nan")) == ""
    assert cell_to_string("  padded ") == "padded"
    assert cell_to_string(datetime(2024, 3, 1)) == "2024-03-01"
    assert cell_to_string(datetime(2024, 3, 1, 9, 30)) == "2024-03-01 09:30:00"


def test_build_headers_fills_blanks_and_dedupes():
    assert build_headers(["Name", None, "Name", "", "Name"], 6) == [
        "Name", "Column2", "Name_2", "Column4", "Name_3", "Column6",
    ]


def test_read_sheet_skips_blank_rows(tmp_path, make_workbook):
    path = tmp_path / "book.xlsx"
    path.write_bytes(make_workbook([
        ["Name", None, "Amount"],
        ["Al", "x", 5],
        [None, None, None],
        ["Bo", None, 7.5],
    ]))

    parsed = read_sheet(str(path))

    assert parsed.sheet_name == "Data"
    assert parsed.headers == ["Name", "Column2", "Amount"]
    assert parsed.rows == [
        (2, {"Name": "Al", "Column2": "x", "Amount": "5"}),
        (4, {"Name": "Bo", "Column2": "", "Amount": "7.5"}),
    ]
    assert parsed.skipped_rows == 1


def test_read_sheet_rejects_unknown_type_and_sheet(tmp_path, make_workbook):
    path = tmp_path / "book.xlsx"
    path.write_bytes(make_workbook([["A"], ["1"]], extra_sheets=["Second"]))

    with pytest.raises(NotFoundError) as exc_info:
        read_sheet(str(path), "Missing")
    assert "Second" in exc_info.value.message

    with pytest.raises(InvalidArgumentError):
        read_sheet(str(tmp_path / "notes.txt"))


def test_read_stores_rows(db, register_file, make_workbook):
    register_file("book.xlsx", make_workbook([["Name", "Age"], ["Al", 30], ["Bo", 40]]))

    result = excel_service.read_excel_data(db, "book.xlsx")

    assert result.sheet_name == "Data"
    assert result.row_count == 2
    rows = live_rows(db, "book.xlsx")
    assert [r.row_index for r in rows] == [2, 3]
    assert all(r.version == 1 for r in rows)
    assert json.loads(rows[0].row_data) == {"Name": "Al", "Age": "30"}


def test_reread_replaces_previous_generation(db, register_file, make_workbook, tmp_path):
    excel_file = register_file("book.xlsx", make_workbook([["Name"], ["Al"], ["Bo"]]))
    excel_service.read_excel_data(db, "book.xlsx")
    first_ids = {r.id for r in live_rows(db, "book.xlsx")}

    # The sheet changes on disk, then is read again
    with open(excel_file.file_path, "wb") as f:
        f.write(make_workbook([["Name"], ["Cy"]]))
    result = excel_service.read_excel_data(db, "book.xlsx")

    assert result.replaced_rows == 2
    current = live_rows(db, "book.xlsx")
    assert [json.loads(r.row_data) for r in current] == [{"Name": "Cy"}]
    assert not first_ids & {r.id for r in current}

    retired = db.query(ExcelDataRow).filter(ExcelDataRow.id.in_(first_ids)).all()
    assert all(r.is_deleted for r in retired)
    assert all(r.modified_by == "System" for r in retired)


def test_reread_only_touches_its_sheet(db, register_file, add_rows, make_workbook):
    register_file("book.xlsx", make_workbook([["Name"], ["Al"]]))
    other = add_rows("book.xlsx", "Other", [(2, {"Name": "keep"})])[0]

    excel_service.read_excel_data(db, "book.xlsx")

    db.refresh(other)
    assert other.is_deleted is False


def test_read_csv(db, register_file):
    register_file("data.csv", "Name,City\nAl,Oslo\n,\nBo,Rome\n".encode("utf-8"))

    result = excel_service.read_excel_data(db, "data.csv")

    assert result.sheet_name == "Sheet1"
    assert [(r.row_index, r.data) for r in result.rows] == [
        (2, {"Name": "Al", "City": "Oslo"}),
        (4, {"Name": "Bo", "City": "Rome"}),
    ]


def test_parse_failure_keeps_existing_rows(db, register_file, make_workbook):
    excel_file = register_file("book.xlsx", make_workbook([["Name"], ["Al"]]))
    excel_service.read_excel_data(db, "book.xlsx")

    with open(excel_file.file_path, "wb") as f:
        f.write(b"this is not a workbook")

    with pytest.raises(ExternalFailureError):
        excel_service.read_excel_data(db, "book.xlsx")
    assert len(live_rows(db, "book.xlsx")) == 1


def test_read_requires_file(db, register_file, make_workbook):
    with pytest.raises(NotFoundError):
        excel_service.read_excel_data(db, "nothing.xlsx")

    excel_file = register_file("gone.xlsx", make_workbook([["A"], ["1"]]))
    excel_file.file_path = "/nonexistent/gone.xlsx"
    db.commit()

    with pytest.raises(ExternalFailureError):
        excel_service.read_excel_data(db, "gone.xlsx")


def test_storage_failure_rolls_back_replacement(db, register_file, make_workbook, monkeypatch):
    excel_file = register_file("book.xlsx", make_workbook([["Name"], ["Al"]]))
    excel_service.read_excel_data(db, "book.xlsx")
    original = live_rows(db, "book.xlsx")[0]

    with open(excel_file.file_path, "wb") as f:
        f.write(make_workbook([["Name"], ["Bo"], ["Cy"]]))

    def failing_commit():
        # Both the retirement and the inserts reach the database before the failure
        db.flush()
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "commit", failing_commit)

    with pytest.raises(RuntimeError):
        excel_service.read_excel_data(db, "book.xlsx")

    db.expire_all()
    rows = db.query(ExcelDataRow).filter(ExcelDataRow.file_name == "book.xlsx").all()
    assert [r.id for r in rows] == [original.id]
    assert rows[0].is_deleted is False
    assert rows[0].modified_by is None
    assert rows[0].modified_date is None
    assert json.loads(rows[0].row_data) == {"Name": "Al"}
