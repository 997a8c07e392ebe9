from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from excel_data.core.database import Base
from excel_data.utils.timeutils import utcnow


class AuditEntry(Base):
    """
    Append-only record of one create/update/delete attempt against a row.

    original_row_id is a plain integer, not a foreign key: the entry outlives
    whatever happens to the row it documents.
    """
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    file_name = Column(String(255), nullable=False, index=True)
    sheet_name = Column(String(255), nullable=False)
    row_index = Column(Integer, nullable=False)
    original_row_id = Column(Integer, nullable=False, index=True)
    # CREATE, UPDATE or DELETE
    operation_type = Column(String(50), nullable=False)
    # Column-maps before/after the change, as JSON
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    # JSON array of column names
    changed_columns = Column(Text, nullable=True)
    modified_by = Column(String(255), nullable=True)
    change_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    user_ip = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)
    change_reason = Column(String(1000), nullable=True)
    is_success = Column(Boolean, nullable=False, default=True)
    error_message = Column(String(1000), nullable=True)
