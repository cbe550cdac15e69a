"""Celery task for long-running product imports."""

from __future__ import annotations

import logging

from product_importer.db.session import get_fresh_session
from product_importer.services.catalog import SqlCatalogService
from product_importer.services.import_runner import ImportJobRunner
from product_importer.services.job_repository import JobRepository
from product_importer.services.mapping_profiles import MappingProfileService
from product_importer.storage.object_storage import get_storage
from product_importer.workers.celery_app import IMPORT_QUEUE, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="product_importer.workers.tasks.run_import_job")
def run_import_job(self, job_id: str) -> str | None:
    """Claim and execute one import job; returns its final status."""
    session = get_fresh_session()
    try:
        jobs = JobRepository(session)
        profiles = MappingProfileService(session, jobs.count_active_for_profile)
        runner = ImportJobRunner(
            session,
            get_storage(),
            SqlCatalogService(session),
            profile_lookup=profiles.lookup_resolved,
        )
        status = runner.run(job_id)
        logger.info(f"Import task {self.request.id} finished job {job_id} with status {status}")
        return status
    finally:
        session.close()


def enqueue_import_job(job_id: str) -> None:
    """Hand a freshly created job to the ``imports`` queue."""
    run_import_job.apply_async(args=(job_id,), queue=IMPORT_QUEUE)
