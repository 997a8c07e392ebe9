from pathlib import Path
from typing import List, Optional
from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from excel_data.api.dependencies import get_client_info, get_file_name
from excel_data.core.database import get_db
from excel_data.schemas.common import ApiResponse
from excel_data.schemas.excel import (
    AddRowRequest,
    BulkUpdateItemOut,
    BulkUpdateRequest,
    DataStatistics,
    ExportRequest,
    FileOut,
    PagedRows,
    ReadResult,
    RowOut,
    UpdateRowRequest,
    UploadAndReadResult,
)
from excel_data.services.audit_service import ClientInfo
from excel_data.services.excel_service import excel_service
from excel_data.services.row_mutator import BulkUpdateItem, row_mutator
from excel_data.utils.timeutils import utcnow

router = APIRouter(prefix="/excel", tags=["excel"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.post("/upload", response_model=ApiResponse[FileOut])
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    uploaded_by: Optional[str] = Form(None, alias="uploadedBy"),
    db: Session = Depends(get_db)
):
    """Upload a spreadsheet (Excel or CSV)"""
    db_file = await excel_service.upload_file(db, file, uploaded_by)
    return ApiResponse[FileOut](
        data=FileOut.model_validate(db_file),
        message="File uploaded. It can now be read into the database.",
    )


@router.get("/files", response_model=ApiResponse[List[FileOut]])
async def list_files(db: Session = Depends(get_db)):
    """List active files, newest first"""
    files = excel_service.list_files(db)
    return ApiResponse[List[FileOut]](data=[FileOut.model_validate(f) for f in files])


@router.post("/read/{file_name}", response_model=ApiResponse[ReadResult])
async def read_file(
    file_name: str = Depends(get_file_name),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    db: Session = Depends(get_db)
):
    """Parse a stored file and replace the sheet's rows"""
    result = excel_service.read_excel_data(db, file_name, sheet_name)
    return ApiResponse[ReadResult](data=result, message=f"{result.row_count} rows read")


@router.post("/read-from-file", response_model=ApiResponse[UploadAndReadResult])
async def read_from_file(
    file: UploadFile = FastAPIFile(...),
    sheet_name: Optional[str] = Form(None, alias="sheetName"),
    uploaded_by: Optional[str] = Form(None, alias="uploadedBy"),
    db: Session = Depends(get_db)
):
    """Upload a spreadsheet and read it in one call"""
    db_file = await excel_service.upload_file(db, file, uploaded_by)
    result = excel_service.read_excel_data(db, db_file.file_name, sheet_name)
    return ApiResponse[UploadAndReadResult](
        data=UploadAndReadResult(file=FileOut.model_validate(db_file), result=result),
        message=f"{result.row_count} rows read",
    )


@router.get("/data/{file_name}", response_model=ApiResponse[PagedRows])
async def get_data(
    file_name: str = Depends(get_file_name),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    page: int = Query(1),
    page_size: Optional[int] = Query(None, alias="pageSize"),
    db: Session = Depends(get_db)
):
    """Page through the live rows of a file"""
    paged = excel_service.get_excel_data(db, file_name, sheet_name, page, page_size)
    return ApiResponse[PagedRows](data=paged)


@router.get("/data/{file_name}/all", response_model=ApiResponse[List[RowOut]])
async def get_all_data(
    file_name: str = Depends(get_file_name),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    db: Session = Depends(get_db)
):
    rows = excel_service.get_all_excel_data(db, file_name, sheet_name)
    return ApiResponse[List[RowOut]](data=rows, message=f"{len(rows)} rows")


@router.put("/data", response_model=ApiResponse[RowOut])
async def update_row(
    request: UpdateRowRequest,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    row = await row_mutator.update_row(
        db, request.id, request.data, request.modified_by, client, request.change_reason
    )
    return ApiResponse[RowOut](data=RowOut.from_row(row), message="Row updated")


@router.put("/data/bulk", response_model=ApiResponse[List[BulkUpdateItemOut]])
async def bulk_update(
    request: BulkUpdateRequest,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """Update several rows; each item succeeds or fails on its own"""
    items = [BulkUpdateItem(row_id=u.id, data=u.data, modified_by=u.modified_by) for u in request.updates]
    results = await row_mutator.bulk_update(db, items, request.modified_by, client)

    payload = [
        BulkUpdateItemOut(
            id=r.row_id,
            success=r.success,
            data=RowOut.from_row(r.row) if r.row is not None else None,
            message=r.message,
        )
        for r in results
    ]
    succeeded = sum(1 for r in results if r.success)
    return ApiResponse[List[BulkUpdateItemOut]](
        data=payload, message=f"{succeeded} of {len(results)} rows updated"
    )


@router.post("/data", response_model=ApiResponse[RowOut])
async def add_row(
    request: AddRowRequest,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    row = excel_service.add_row(db, request.file_name, request.sheet_name, request.row_data, request.added_by, client)
    return ApiResponse[RowOut](data=RowOut.from_row(row), message="Row added")


@router.delete("/data/{row_id}", response_model=ApiResponse[RowOut])
async def delete_row(
    row_id: int,
    deleted_by: Optional[str] = Query(None, alias="deletedBy"),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """Soft-delete a row; deleting it again is a no-op"""
    row = await excel_service.delete_row(db, row_id, deleted_by, client)
    return ApiResponse[RowOut](data=RowOut.from_row(row), message="Row deleted")


@router.post("/export")
async def export_data(request: ExportRequest, db: Session = Depends(get_db)):
    """Export live rows as an .xlsx workbook"""
    content = excel_service.export(
        db,
        request.file_name,
        request.sheet_name,
        request.row_ids,
        request.include_modification_history,
    )
    export_name = f"{Path(request.file_name).stem}_export_{utcnow().strftime('%Y%m%d_%H%M%S')}.xlsx"
    return StreamingResponse(
        iter([content]),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{export_name}"'},
    )


@router.get("/sheets/{file_name}", response_model=ApiResponse[List[str]])
async def get_sheets(file_name: str = Depends(get_file_name), db: Session = Depends(get_db)):
    sheets = excel_service.get_sheets(db, file_name)
    return ApiResponse[List[str]](data=sheets)


@router.get("/statistics/{file_name}", response_model=ApiResponse[DataStatistics])
async def get_statistics(
    file_name: str = Depends(get_file_name),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    db: Session = Depends(get_db)
):
    statistics = excel_service.get_statistics(db, file_name, sheet_name)
    return ApiResponse[DataStatistics](data=statistics)


@router.delete("/files/{file_name}", response_model=ApiResponse[int])
async def delete_file(
    file_name: str = Depends(get_file_name),
    deleted_by: Optional[str] = Query(None, alias="deletedBy"),
    db: Session = Depends(get_db)
):
    """Deactivate a file and soft-delete all of its rows"""
    deleted = excel_service.delete_file(db, file_name, deleted_by)
    return ApiResponse[int](data=deleted, message=f"File deleted, {deleted} rows removed")
