from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, UploadFile
from sqlalchemy.orm import Session
from excel_data.api.dependencies import get_file_name
from excel_data.core.database import get_db
from excel_data.schemas.common import ApiResponse
from excel_data.schemas.comparison import (
    ChangeEntry,
    CompareFilesRequest,
    CompareVersionsRequest,
    ComparisonResult,
    FileHistoryEntry,
    RowHistoryEntry,
    UploadedComparison,
    UploadedFileRef,
)
from excel_data.services.comparison_service import comparison_service
from excel_data.services.excel_service import excel_service

router = APIRouter(prefix="/comparison", tags=["comparison"])


@router.post("/files", response_model=ApiResponse[ComparisonResult])
async def compare_files(request: CompareFilesRequest, db: Session = Depends(get_db)):
    """Compare the stored rows of two uploaded files"""
    result = comparison_service.compare_files(
        db, request.file_name1, request.file_name2, request.sheet_name, request.sheet_name2
    )
    return ApiResponse[ComparisonResult](data=result)


@router.post("/compare-from-files", response_model=ApiResponse[UploadedComparison])
async def compare_from_files(
    file1: UploadFile = FastAPIFile(...),
    file2: UploadFile = FastAPIFile(...),
    sheet1_name: Optional[str] = Form(None, alias="sheet1Name"),
    sheet2_name: Optional[str] = Form(None, alias="sheet2Name"),
    compared_by: Optional[str] = Form(None, alias="comparedBy"),
    db: Session = Depends(get_db)
):
    """Upload two spreadsheets, read both and compare them"""
    stored1 = await excel_service.upload_file(db, file1, compared_by)
    stored2 = await excel_service.upload_file(db, file2, compared_by)

    read1 = excel_service.read_excel_data(db, stored1.file_name, sheet1_name)
    read2 = excel_service.read_excel_data(db, stored2.file_name, sheet2_name)

    result = comparison_service.compare_files(
        db, stored1.file_name, stored2.file_name, read1.sheet_name, read2.sheet_name
    )
    return ApiResponse[UploadedComparison](
        data=UploadedComparison(
            comparison=result,
            file1=UploadedFileRef(name=stored1.file_name, original=stored1.original_file_name),
            file2=UploadedFileRef(name=stored2.file_name, original=stored2.original_file_name),
        ),
        message="Both files were uploaded and compared",
    )


@router.post("/versions", response_model=ApiResponse[ComparisonResult])
async def compare_versions(request: CompareVersionsRequest, db: Session = Depends(get_db)):
    """Compare a file with itself at two points in time"""
    result = comparison_service.compare_versions(
        db, request.file_name, request.version1_date, request.version2_date, request.sheet_name
    )
    return ApiResponse[ComparisonResult](data=result)


@router.post("/snapshot-compare", response_model=ApiResponse[ComparisonResult])
async def compare_snapshots(request: CompareVersionsRequest, db: Session = Depends(get_db)):
    result = comparison_service.compare_versions(
        db, request.file_name, request.version1_date, request.version2_date, request.sheet_name
    )
    return ApiResponse[ComparisonResult](data=result, message="Snapshots compared")


@router.get("/changes/{file_name}", response_model=ApiResponse[List[ChangeEntry]])
async def get_changes(
    file_name: str = Depends(get_file_name),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    db: Session = Depends(get_db)
):
    changes = comparison_service.get_changes(db, file_name, from_date, to_date, sheet_name)
    return ApiResponse[List[ChangeEntry]](data=changes)


@router.get("/history/{file_name}", response_model=ApiResponse[List[FileHistoryEntry]])
async def get_change_history(
    file_name: str = Depends(get_file_name),
    sheet_name: Optional[str] = Query(None, alias="sheetName"),
    db: Session = Depends(get_db)
):
    history = comparison_service.get_change_history(db, file_name, sheet_name)
    return ApiResponse[List[FileHistoryEntry]](data=history)


@router.get("/row-history/{row_id}", response_model=ApiResponse[List[RowHistoryEntry]])
async def get_row_history(row_id: int, db: Session = Depends(get_db)):
    history = comparison_service.get_row_history(db, row_id)
    return ApiResponse[List[RowHistoryEntry]](data=history)
