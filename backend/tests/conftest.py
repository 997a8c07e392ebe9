import io
import json
import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment must be ready first
_TMP_DIR = Path(tempfile.mkdtemp(prefix="excel_data_tests_"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP_DIR / "uploads")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["UPDATE_RETRY_BACKOFF_MS"] = "0"
os.environ["SSIS_MIN_DELAY_SECONDS"] = "0"
os.environ["SSIS_MAX_DELAY_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook

from excel_data.core.database import Base, SessionLocal, engine, get_db, init_db
from excel_data.main import app
from excel_data.models.file import ExcelFile
from excel_data.models.row import ExcelDataRow


@pytest.fixture(autouse=True)
def fresh_schema():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def workbook_bytes(rows, sheet_name="Data", extra_sheets=()):
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name
    for row in rows:
        ws.append(list(row))
    for name in extra_sheets:
        wb.create_sheet(name)
    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


@pytest.fixture
def make_workbook():
    return workbook_bytes


@pytest.fixture
def register_file(db, tmp_path):
    """Write content to disk and register it as an active file, bypassing upload."""

    def _register(file_name, content, original_name=None):
        path = tmp_path / file_name
        path.write_bytes(content)
        excel_file = ExcelFile(
            file_name=file_name,
            original_file_name=original_name or file_name,
            file_path=str(path),
            file_size=len(content),
        )
        db.add(excel_file)
        db.commit()
        db.refresh(excel_file)
        return excel_file

    return _register


@pytest.fixture
def add_rows(db):
    """Insert live rows directly: add_rows(file, sheet, [(row_index, {...}), ...])."""

    def _add(file_name, sheet_name, rows, **fields):
        created = []
        for row_index, data in rows:
            row = ExcelDataRow(
                file_name=file_name,
                sheet_name=sheet_name,
                row_index=row_index,
                row_data=json.dumps(data),
                **fields,
            )
            db.add(row)
            created.append(row)
        db.commit()
        for row in created:
            db.refresh(row)
        return created

    return _add
