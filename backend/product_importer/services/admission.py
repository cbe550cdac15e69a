"""Gate job submissions before any file processing begins."""

from __future__ import annotations

import logging

from product_importer.core.errors import ConcurrencyLimitExceeded, MissingIdempotencyKey
from product_importer.db.models.import_job import ImportJob
from product_importer.services.job_repository import JobRepository

logger = logging.getLogger(__name__)


class AdmissionController:
    """Idempotency-key presence and per-user concurrency ceiling."""

    def __init__(self, jobs: JobRepository, max_concurrent: int, retry_after_seconds: int = 60):
        self.jobs = jobs
        self.max_concurrent = max_concurrent
        self.retry_after_seconds = retry_after_seconds

    @staticmethod
    def require_idempotency_key(idempotency_key: str | None) -> str:
        if idempotency_key is None or not idempotency_key.strip():
            raise MissingIdempotencyKey()
        return idempotency_key.strip()

    def find_existing(self, owner_id: str, idempotency_key: str) -> ImportJob | None:
        """Return the job already bound to this key, if any."""
        return self.jobs.find_by_idempotency_key(owner_id, idempotency_key)

    def check_capacity(self, owner_id: str) -> None:
        active = self.jobs.count_active(owner_id)
        if active >= self.max_concurrent:
            logger.info(
                f"Admission rejected for {owner_id}: {active} active jobs (limit {self.max_concurrent})"
            )
            raise ConcurrencyLimitExceeded(active, self.max_concurrent, self.retry_after_seconds)
