from celery import shared_task

from medmarket.core.database import SessionLocal
from medmarket.services.export_service import ExportService
import logging

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3)
def run_export_job(self, job_id: int):
    db = SessionLocal()
    try:
        result = ExportService.run_job(db, job_id)
        return result["status"]
    except Exception as e:
        logger.error(f"Error in run_export_job: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()
