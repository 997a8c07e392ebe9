import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional
from sqlalchemy.orm import Session
from excel_data.core.config import settings
from excel_data.models.audit import AuditEntry
from excel_data.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ClientInfo:
    """Who triggered a change, as seen by the HTTP layer."""
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _clip(value: Optional[str], length: int) -> Optional[str]:
    return value[:length] if value else value


class AuditService:
    @staticmethod
    def log_change(
        db: Session,
        *,
        file_name: str,
        sheet_name: str,
        row_index: int,
        original_row_id: int,
        operation_type: str,
        old_value: Any = None,
        new_value: Any = None,
        modified_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        change_reason: Optional[str] = None,
        changed_columns: Optional[Iterable[str]] = None,
    ) -> Optional[AuditEntry]:
        """
        Append one audit entry for a change that has already been committed.

        Never raises: a failure is logged, then recorded as a second entry with
        is_success=False. If even that fails it is logged and dropped - the
        change it documents must stand either way.
        """
        operation = operation_type.upper()
        try:
            entry = AuditEntry(
                file_name=file_name,
                sheet_name=sheet_name,
                row_index=row_index,
                original_row_id=original_row_id,
                operation_type=operation,
                old_value=_to_json(old_value),
                new_value=_to_json(new_value),
                changed_columns=_to_json(list(changed_columns)) if changed_columns is not None else None,
                modified_by=modified_by,
                change_date=utcnow(),
                user_ip=_clip(client.ip, 50) if client else None,
                user_agent=_clip(client.user_agent, 500) if client else None,
                change_reason=_clip(change_reason, 1000),
                is_success=True,
            )
            db.add(entry)
            db.commit()
            logger.info(f"Audit entry written: {operation} - {file_name}/{sheet_name} - row {row_index}")
            return entry
        except Exception as e:
            logger.error(f"Error writing audit entry: {operation} - {file_name}: {e}", exc_info=True)
            try:
                db.rollback()
                failure = AuditEntry(
                    file_name=file_name,
                    sheet_name=sheet_name,
                    row_index=row_index,
                    original_row_id=original_row_id,
                    operation_type=operation,
                    modified_by=modified_by,
                    change_date=utcnow(),
                    is_success=False,
                    error_message=_clip(str(e), 1000),
                )
                db.add(failure)
                db.commit()
            except Exception:
                db.rollback()
                logger.critical("Audit failure record could not be written either", exc_info=True)
            return None

    @staticmethod
    def get_history(
        db: Session,
        file_name: Optional[str] = None,
        sheet_name: Optional[str] = None,
        row_id: Optional[int] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Audit entries matching the filters, newest first"""
        limit = limit or settings.AUDIT_HISTORY_LIMIT
        limit = max(1, min(limit, settings.MAX_PAGE_SIZE))

        query = db.query(AuditEntry)
        if file_name:
            query = query.filter(AuditEntry.file_name == file_name)
        if sheet_name:
            query = query.filter(AuditEntry.sheet_name == sheet_name)
        if row_id is not None:
            query = query.filter(AuditEntry.original_row_id == row_id)
        if from_date is not None:
            query = query.filter(AuditEntry.change_date >= from_date)
        if to_date is not None:
            query = query.filter(AuditEntry.change_date <= to_date)

        return query.order_by(AuditEntry.change_date.desc(), AuditEntry.id.desc()).limit(limit).all()


audit_service = AuditService()
