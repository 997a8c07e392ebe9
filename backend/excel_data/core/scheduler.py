"""
Background scheduler for package executions and periodic tasks.

- Package runs: one-off jobs submitted by the imports API
- Stale import cleanup: runs every 10 minutes
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from excel_data.core.config import settings
from excel_data.core.database import SessionLocal
import logging

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def run_package_job(import_id: int, package_name: str):
    """Execute one package run in a scheduler worker thread."""
    from excel_data.services.package_service import package_service

    package_service.run_package(import_id, package_name)


def fail_stale_imports_job():
    """
    Background job to fail imports stuck in Processing.

    Package runs live in this process only; after a restart their records
    would otherwise stay Processing forever.
    """
    from excel_data.services.package_service import package_service

    db = SessionLocal()
    try:
        package_service.fail_stale_imports(db)
    except Exception as e:
        logger.error(f"Error in fail_stale_imports_job: {str(e)}")
        db.rollback()
    finally:
        db.close()


def schedule_package_run(import_id: int, package_name: str):
    """Queue a package run; it starts as soon as a worker is free."""
    scheduler.add_job(
        run_package_job,
        args=[import_id, package_name],
        id=f"package_run_{import_id}",
        name=f"Package {package_name} for import {import_id}",
        replace_existing=True,
    )


def start_scheduler():
    """
    Start the background scheduler.

    Called when the FastAPI app starts, unless SCHEDULER_ENABLED is off.
    """
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background scheduler disabled by configuration.")
        return

    if not scheduler.running:
        scheduler.add_job(
            fail_stale_imports_job,
            trigger=IntervalTrigger(minutes=10),
            id="fail_stale_imports",
            name="Fail stale imports",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background scheduler started. Stale import job scheduled to run every 10 minutes.")


def stop_scheduler():
    """
    Stop the background scheduler.

    This should be called when the FastAPI app shuts down.
    """
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Background scheduler stopped.")
