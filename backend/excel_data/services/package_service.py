"""
Delegation of imports to external ETL (SSIS) packages.

Execution is simulated: a scheduler job sleeps for a random while in short
ticks, reporting progress and watching the durable status so a cancel takes
effect on the next tick.
"""
import logging
import random
import time
from datetime import timedelta
from typing import Callable, List, Optional
from fastapi import UploadFile
from sqlalchemy.orm import Session
from excel_data.core.config import settings
from excel_data.core.database import SessionLocal
from excel_data.core.exceptions import (
    ExternalFailureError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
)
from excel_data.core.scheduler import schedule_package_run
from excel_data.models.data_import import DataImport, ImportStatus
from excel_data.schemas.data_import import ImportStatusOut, PackageInfo
from excel_data.services.excel_service import read_upload
from excel_data.storage.local_storage import storage
from excel_data.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

IMPORTS_SUBDIR = "imports"

PACKAGES = [
    PackageInfo(name="ExcelDataImport", description="Imports data from Excel files to database"),
    PackageInfo(name="CSVDataImport", description="Imports data from CSV files to database"),
    PackageInfo(name="DataValidation", description="Validates imported data for quality issues"),
]

CURRENT_STEPS = {
    ImportStatus.PENDING.value: "Waiting for execution",
    ImportStatus.PROCESSING.value: "Processing data",
    ImportStatus.COMPLETED.value: "Completed",
    ImportStatus.FAILED.value: "Failed",
    ImportStatus.CANCELLED.value: "Cancelled",
}

CANCELLABLE = {ImportStatus.PENDING.value, ImportStatus.PROCESSING.value}


class PackageService:
    def __init__(self, rng: Optional[random.Random] = None, sleep: Callable[[float], None] = time.sleep):
        self.rng = rng or random.Random()
        self.sleep = sleep

    @staticmethod
    def _get(db: Session, import_id: int) -> DataImport:
        record = db.get(DataImport, import_id)
        if record is None:
            raise NotFoundError(f"Import not found: {import_id}")
        return record

    async def create_import(self, db: Session, file: UploadFile, created_by: Optional[str] = None) -> DataImport:
        content = await read_upload(file)
        file_path, _ = storage.save_bytes(file.filename, content, subdir=IMPORTS_SUBDIR)

        record = DataImport(
            file_name=file.filename,
            file_path=file_path,
            file_size=len(content),
            status=ImportStatus.PENDING.value,
            progress=0,
            created_by=created_by,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(f"Created import {record.id} for {file.filename}")
        return record

    def start_execution(self, db: Session, import_id: int, package_name: str) -> DataImport:
        """Claim a Pending import and hand it to the scheduler; returns without waiting."""
        record = self._get(db, import_id)
        if record.status != ImportStatus.PENDING.value:
            raise InvalidStateError(f"Import {import_id} is {record.status}, only Pending imports can be started")
        if not storage.file_exists(record.file_path):
            raise ExternalFailureError(f"Import file is missing: {record.file_name}")
        if package_name not in {p.name for p in PACKAGES}:
            raise InvalidArgumentError(f"Unknown package: {package_name}")

        record.status = ImportStatus.PROCESSING.value
        record.started_date = utcnow()
        record.ssis_package_name = package_name
        record.progress = 0
        db.commit()
        db.refresh(record)

        schedule_package_run(import_id, package_name)
        logger.info(f"Import {import_id} handed to package {package_name}")
        return record

    def run_package(self, import_id: int, package_name: str, session_factory=SessionLocal) -> Optional[str]:
        """
        Body of the scheduled job. Returns the final status, or None when the
        record vanished.
        """
        db = session_factory()
        try:
            record = db.get(DataImport, import_id)
            if record is None:
                logger.error(f"Import {import_id} disappeared before execution")
                return None

            duration = self.rng.uniform(settings.SSIS_MIN_DELAY_SECONDS, settings.SSIS_MAX_DELAY_SECONDS)
            tick = max(settings.SSIS_TICK_SECONDS, 0.01)
            logger.info(f"Running package {package_name} for import {import_id} ({duration:.1f}s)")

            elapsed = 0.0
            while elapsed < duration:
                step = min(tick, duration - elapsed)
                self.sleep(step)
                elapsed += step

                db.expire_all()
                record = db.get(DataImport, import_id)
                if record is None or record.status != ImportStatus.PROCESSING.value:
                    logger.info(f"Import {import_id} stopped: status is {record.status if record else 'gone'}")
                    return record.status if record else None
                record.progress = min(99, int(elapsed / duration * 100))
                db.commit()

            if self.rng.random() < settings.SSIS_SUCCESS_RATE:
                processed = self.rng.randint(100, 1000)
                values = {
                    DataImport.status: ImportStatus.COMPLETED.value,
                    DataImport.progress: 100,
                    DataImport.records_processed: processed,
                    DataImport.records_total: processed,
                    DataImport.processing_log: f"Package {package_name} executed successfully. Records processed: {processed}",
                }
            else:
                values = {
                    DataImport.status: ImportStatus.FAILED.value,
                    DataImport.error_message: "SSIS package execution failed",
                    DataImport.processing_log: f"Package {package_name} execution failed for file {record.file_name}",
                }
            values[DataImport.completed_date] = utcnow()

            # Only a still-Processing record may be finished; a cancel in between wins
            updated = db.query(DataImport).filter(
                DataImport.id == import_id,
                DataImport.status == ImportStatus.PROCESSING.value,
            ).update(values, synchronize_session=False)
            db.commit()

            if not updated:
                db.expire_all()
                record = db.get(DataImport, import_id)
                return record.status if record else None

            final_status = values[DataImport.status]
            logger.info(f"Package {package_name} for import {import_id} finished: {final_status}")
            return final_status
        except Exception as e:
            logger.error(f"Error executing package {package_name} for import {import_id}: {str(e)}", exc_info=True)
            db.rollback()
            self._mark_failed(db, import_id, str(e))
            return ImportStatus.FAILED.value
        finally:
            db.close()

    @staticmethod
    def _mark_failed(db: Session, import_id: int, message: str) -> None:
        db.query(DataImport).filter(
            DataImport.id == import_id,
            DataImport.status == ImportStatus.PROCESSING.value,
        ).update({
            DataImport.status: ImportStatus.FAILED.value,
            DataImport.error_message: message[:1000],
            DataImport.completed_date: utcnow(),
        }, synchronize_session=False)
        db.commit()

    def get_status(self, db: Session, import_id: int) -> ImportStatusOut:
        record = self._get(db, import_id)
        return ImportStatusOut(
            id=record.id,
            status=record.status,
            progress=record.progress,
            current_step=CURRENT_STEPS.get(record.status, record.status),
            records_processed=record.records_processed,
            error_message=record.error_message,
        )

    @staticmethod
    def list_imports(db: Session, status: Optional[str] = None) -> List[DataImport]:
        query = db.query(DataImport)
        if status:
            query = query.filter(DataImport.status == status)
        return query.order_by(DataImport.created_date.desc(), DataImport.id.desc()).all()

    @staticmethod
    def list_packages() -> List[PackageInfo]:
        return list(PACKAGES)

    def cancel(self, db: Session, import_id: int) -> DataImport:
        record = self._get(db, import_id)
        if record.status not in CANCELLABLE:
            raise InvalidStateError(f"Import {import_id} is {record.status} and can no longer be cancelled")

        record.status = ImportStatus.CANCELLED.value
        record.completed_date = utcnow()
        record.error_message = "Cancelled by user"
        db.commit()
        db.refresh(record)
        logger.info(f"Import {import_id} cancelled")
        return record

    @staticmethod
    def fail_stale_imports(db: Session, max_age_minutes: Optional[int] = None) -> int:
        """Fail imports left in Processing by a job that no longer exists."""
        max_age_minutes = max_age_minutes or settings.STALE_IMPORT_MINUTES
        cutoff = utcnow() - timedelta(minutes=max_age_minutes)

        stale = db.query(DataImport).filter(
            DataImport.status == ImportStatus.PROCESSING.value,
            DataImport.started_date < cutoff,
        ).all()
        for record in stale:
            record.status = ImportStatus.FAILED.value
            record.completed_date = utcnow()
            record.error_message = f"Execution did not finish within {max_age_minutes} minutes"
        db.commit()

        if stale:
            logger.warning(f"Marked {len(stale)} stale imports as Failed")
        return len(stale)


package_service = PackageService()
