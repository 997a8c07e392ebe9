from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Boolean
from excel_data.core.database import Base
from excel_data.utils.timeutils import utcnow


class ExcelFile(Base):
    """
    Registry entry for an uploaded spreadsheet.

    Actual file content is stored on disk, not in database.
    Entries are never removed - deleting a file only deactivates it.
    """
    __tablename__ = "excel_files"

    id = Column(Integer, primary_key=True, index=True)
    # Server generated logical name, used by every other API call
    file_name = Column(String(255), nullable=False, unique=True, index=True)
    # What the user uploaded (for display purposes)
    original_file_name = Column(String(255), nullable=False, default="")
    # Full path to file on disk - used to read file content
    file_path = Column(String(500), nullable=False, default="")
    # BigInteger handles large files (>2GB)
    file_size = Column(BigInteger, nullable=False, default=0)
    upload_date = Column(DateTime, nullable=False, default=utcnow)
    uploaded_by = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
