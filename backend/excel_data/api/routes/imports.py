from typing import List, Optional
from fastapi import APIRouter, Depends, File as FastAPIFile, Form, Query, UploadFile
from sqlalchemy.orm import Session
from excel_data.core.database import get_db
from excel_data.schemas.common import ApiResponse
from excel_data.schemas.data_import import DataImportOut, ExecuteRequest, ImportStatusOut, PackageInfo
from excel_data.services.package_service import package_service

router = APIRouter(prefix="/data", tags=["imports"])


@router.post("/upload", response_model=ApiResponse[DataImportOut])
async def upload_import(
    file: UploadFile = FastAPIFile(...),
    created_by: Optional[str] = Form(None, alias="createdBy"),
    db: Session = Depends(get_db)
):
    """Store a file for a later package run"""
    record = await package_service.create_import(db, file, created_by)
    return ApiResponse[DataImportOut](data=DataImportOut.model_validate(record), message="File uploaded")


@router.get("/ssis/packages", response_model=ApiResponse[List[PackageInfo]])
async def list_packages():
    return ApiResponse[List[PackageInfo]](data=package_service.list_packages())


@router.post("/{import_id}/execute", response_model=ApiResponse[DataImportOut])
async def execute_package(import_id: int, request: ExecuteRequest, db: Session = Depends(get_db)):
    """Start a package run and return immediately; poll /status for the outcome"""
    record = package_service.start_execution(db, import_id, request.package_name)
    return ApiResponse[DataImportOut](data=DataImportOut.model_validate(record), message="Started")


@router.get("/{import_id}/status", response_model=ApiResponse[ImportStatusOut])
async def get_status(import_id: int, db: Session = Depends(get_db)):
    return ApiResponse[ImportStatusOut](data=package_service.get_status(db, import_id))


@router.get("", response_model=ApiResponse[List[DataImportOut]])
async def list_imports(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    records = package_service.list_imports(db, status)
    return ApiResponse[List[DataImportOut]](data=[DataImportOut.model_validate(r) for r in records])


@router.post("/{import_id}/cancel", response_model=ApiResponse[DataImportOut])
async def cancel_import(import_id: int, db: Session = Depends(get_db)):
    record = package_service.cancel(db, import_id)
    return ApiResponse[DataImportOut](data=DataImportOut.model_validate(record), message="Cancelled")
