from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index
from excel_data.core.database import Base
from excel_data.utils.timeutils import utcnow


class ExcelDataRow(Base):
    """
    One persisted spreadsheet data row.

    row_index is the 1-based position in the source sheet and is NOT unique:
    every re-read of a sheet soft-deletes the previous generation and inserts
    fresh rows with the same indexes. Rows are never physically removed.
    """
    __tablename__ = "excel_data_rows"

    id = Column(Integer, primary_key=True, index=True)
    file_name = Column(String(255), nullable=False)
    sheet_name = Column(String(255), nullable=False)
    row_index = Column(Integer, nullable=False, index=True)
    # JSON object of column name -> string value, see utils/row_data.py
    row_data = Column(Text, nullable=False, default="{}")
    created_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    modified_date = Column(DateTime, nullable=True, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    version = Column(Integer, nullable=False)
    modified_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_excel_data_rows_file_sheet", "file_name", "sheet_name"),
    )

    # Optimistic concurrency: the ORM sets version=1 on insert, issues every
    # UPDATE as "WHERE id = ? AND version = ?" and bumps the counter by one.
    # A zero-row match raises StaleDataError.
    __mapper_args__ = {"version_id_col": version}
