"""
Row updates under optimistic concurrency.

Every write goes through a load-compare-write cycle. The version column on
ExcelDataRow makes the ORM reject a write when another writer committed in
between (StaleDataError); the whole cycle is then retried with a linear
backoff, and surfaced as ConflictError once the attempts run out.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from excel_data.core.config import settings
from excel_data.core.exceptions import (
    ConflictError,
    ExcelDataError,
    InvalidStateError,
    NotFoundError,
)
from excel_data.models.row import ExcelDataRow
from excel_data.services.audit_service import ClientInfo, audit_service
from excel_data.utils.row_data import (
    RowDataFormatError,
    deserialize_row_data,
    normalize_row_data,
    serialize_row_data,
)
from excel_data.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "The row was modified by another user at the same time. Please reload and retry."


def diff_columns(old: Mapping[str, str], new: Mapping[str, str]) -> List[str]:
    """
    Names of the columns that differ between two column-maps.

    Columns added or changed in ``new`` come first (in ``new`` order), then
    columns that ``new`` no longer has.
    """
    changed = [key for key, value in new.items() if key not in old or old[key] != value]
    changed.extend(key for key in old if key not in new)
    return changed


@dataclass
class BulkUpdateItem:
    row_id: int
    data: Dict[str, Any]
    modified_by: Optional[str] = None


@dataclass
class BulkUpdateResult:
    row_id: int
    success: bool
    row: Optional[ExcelDataRow] = None
    message: Optional[str] = None


@dataclass
class _Change:
    """What a committed attempt hands to the audit log."""
    operation: str
    old_value: Optional[Dict[str, str]]
    new_value: Optional[Dict[str, str]]
    changed_columns: Optional[List[str]] = None


class RowMutator:
    def __init__(self, max_attempts: Optional[int] = None, backoff_seconds: Optional[float] = None):
        self.max_attempts = max_attempts or settings.UPDATE_MAX_ATTEMPTS
        if backoff_seconds is None:
            backoff_seconds = settings.UPDATE_RETRY_BACKOFF_MS / 1000
        self.backoff_seconds = backoff_seconds

    async def update_row(
        self,
        db: Session,
        row_id: int,
        data: Mapping[str, Any],
        modified_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        change_reason: Optional[str] = None,
    ) -> ExcelDataRow:
        """
        Replace a row's column-map.

        An update that changes nothing returns the stored row without touching
        the version counter or the audit log.
        """
        new_data = normalize_row_data(data)

        def attempt() -> Tuple[ExcelDataRow, Optional[_Change]]:
            row = _load_live_row(db, row_id)
            old_data = _current_data(row)
            changed = diff_columns(old_data, new_data)
            if not changed:
                logger.info(f"Update of row {row_id} changes nothing, skipping write")
                return row, None

            row.row_data = serialize_row_data(new_data)
            row.modified_date = utcnow()
            row.modified_by = modified_by
            # Flushing bumps row.version by exactly one
            db.commit()
            logger.info(f"Row {row_id} updated to version {row.version}, changed columns: {changed}")
            return row, _Change("UPDATE", old_data, new_data, changed)

        return await self._run(db, row_id, attempt, modified_by, client, change_reason)

    async def soft_delete_row(
        self,
        db: Session,
        row_id: int,
        deleted_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        change_reason: Optional[str] = None,
    ) -> ExcelDataRow:
        """Mark a row deleted. Deleting an already deleted row is a no-op."""

        def attempt() -> Tuple[ExcelDataRow, Optional[_Change]]:
            row = db.get(ExcelDataRow, row_id, populate_existing=True)
            if row is None:
                raise NotFoundError(f"Row not found: {row_id}")
            if row.is_deleted:
                logger.info(f"Row {row_id} is already deleted")
                return row, None

            old_data = _current_data(row)
            row.is_deleted = True
            row.modified_date = utcnow()
            row.modified_by = deleted_by
            db.commit()
            logger.info(f"Row {row_id} soft-deleted")
            return row, _Change("DELETE", old_data, None)

        return await self._run(db, row_id, attempt, deleted_by, client, change_reason)

    async def bulk_update(
        self,
        db: Session,
        items: List[BulkUpdateItem],
        default_modified_by: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> List[BulkUpdateResult]:
        """Apply updates one by one; a failing item does not affect the others."""
        results = []
        for item in items:
            try:
                row = await self.update_row(
                    db, item.row_id, item.data, item.modified_by or default_modified_by, client
                )
                results.append(BulkUpdateResult(row_id=item.row_id, success=True, row=row))
            except ExcelDataError as e:
                logger.warning(f"Bulk update item {item.row_id} failed: {e.message}")
                results.append(BulkUpdateResult(row_id=item.row_id, success=False, message=e.message))
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Bulk update item {item.row_id} failed in the database: {e}", exc_info=True)
                results.append(BulkUpdateResult(
                    row_id=item.row_id, success=False, message=f"Database error while updating row {item.row_id}"
                ))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Bulk update finished: {succeeded}/{len(results)} rows updated")
        return results

    async def _run(
        self,
        db: Session,
        row_id: int,
        attempt: Callable[[], Tuple[ExcelDataRow, Optional[_Change]]],
        actor: Optional[str],
        client: Optional[ClientInfo],
        change_reason: Optional[str],
    ) -> ExcelDataRow:
        for attempt_number in range(1, self.max_attempts + 1):
            try:
                row, change = attempt()
                break
            except StaleDataError:
                db.rollback()
                if attempt_number >= self.max_attempts:
                    logger.error(f"Row {row_id} still conflicting after {attempt_number} attempts")
                    raise ConflictError(CONFLICT_MESSAGE)
                delay = self.backoff_seconds * attempt_number
                logger.warning(
                    f"Concurrent modification of row {row_id} (attempt {attempt_number}/"
                    f"{self.max_attempts}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        if change is not None:
            audit_service.log_change(
                db,
                file_name=row.file_name,
                sheet_name=row.sheet_name,
                row_index=row.row_index,
                original_row_id=row.id,
                operation_type=change.operation,
                old_value=change.old_value,
                new_value=change.new_value,
                modified_by=actor,
                client=client,
                change_reason=change_reason,
                changed_columns=change.changed_columns,
            )
        return row


def _load_live_row(db: Session, row_id: int) -> ExcelDataRow:
    # populate_existing discards whatever a previous attempt left in the identity map
    row = db.get(ExcelDataRow, row_id, populate_existing=True)
    if row is None:
        raise NotFoundError(f"Row not found: {row_id}")
    if row.is_deleted:
        raise InvalidStateError(f"Row {row_id} has been deleted and cannot be modified")
    return row


def _current_data(row: ExcelDataRow) -> Dict[str, str]:
    try:
        return deserialize_row_data(row.row_data)
    except RowDataFormatError as e:
        logger.warning(f"Row {row.id} holds malformed data, treating it as empty: {e}")
        return {}


row_mutator = RowMutator()
