import enum
from sqlalchemy import Column, Integer, String, DateTime, BigInteger
from excel_data.core.database import Base
from excel_data.utils.timeutils import utcnow


class ImportStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class DataImport(Base):
    """
    Durable status record for a file handed to an external ETL package.

    The package runs in the background scheduler; clients poll this record.
    """
    __tablename__ = "data_imports"

    id = Column(Integer, primary_key=True, index=True)
    # Original upload name
    file_name = Column(String(255), nullable=False)
    file_path = Column(String(500), nullable=True)
    file_size = Column(BigInteger, nullable=False, default=0)
    status = Column(String(50), nullable=False, default=ImportStatus.PENDING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(String(1000), nullable=True)
    created_date = Column(DateTime, nullable=False, default=utcnow)
    started_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)
    created_by = Column(String(255), nullable=True)
    records_processed = Column(Integer, nullable=False, default=0)
    records_total = Column(Integer, nullable=False, default=0)
    ssis_package_name = Column(String(255), nullable=True)
    processing_log = Column(String(1000), nullable=True)
