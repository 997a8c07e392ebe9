import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from excel_data.core.config import settings
from excel_data.core.database import init_db
from excel_data.core.exceptions import ExcelDataError
from excel_data.core.logging import setup_logging
from excel_data.core.scheduler import start_scheduler, stop_scheduler
from excel_data.api.routes import audit, comparison, excel, imports

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage app lifecycle events.

    Startup: configure logging, create tables, start the background scheduler
    Shutdown: stop the background scheduler
    """
    setup_logging(settings.LOG_LEVEL)
    init_db()
    start_scheduler()
    logger.info("Excel Data Management API started")
    yield
    stop_scheduler()


app = FastAPI(
    title="Excel Data Management API",
    description="Upload, edit, compare and export spreadsheet data",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _envelope(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(ExcelDataError)
async def excel_data_error_handler(request: Request, exc: ExcelDataError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return _envelope(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return _envelope(400, f"Invalid request: {errors}")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return _envelope(500, "An unexpected error occurred")


# All routes are prefixed with /api for consistency
app.include_router(excel.router, prefix="/api")
app.include_router(comparison.router, prefix="/api")
app.include_router(audit.router, prefix="/api")
app.include_router(imports.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint - API information"""
    return {"success": True, "data": {"name": "Excel Data Management API", "version": "1.0.0"}}


@app.get("/health")
async def health():
    """Health check endpoint - used by monitoring/deployment tools"""
    return {"success": True, "data": {"status": "healthy"}}
