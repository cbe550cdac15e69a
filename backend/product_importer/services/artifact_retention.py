"""Retention for uploaded sources and generated artifacts of finished jobs."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from product_importer.core.errors import ImportServiceError
from product_importer.db.models.import_job import ImportJob
from product_importer.services.job_repository import JobRepository, utcnow
from product_importer.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    scanned: int = 0
    purged: int = 0
    uploads_kept: int = 0
    errors: int = 0
    freed_bytes: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ArtifactRetention:
    """Delete files of jobs that finished more than ``retention_days`` ago.

    An upload shared through ``source_job_id`` is kept while any job still
    inside the window (or still running) points at it. Purged jobs keep their
    record and status; only ``artifacts`` and ``source_file_url`` are cleared.
    """

    def __init__(
        self,
        session: Session,
        storage: ObjectStorage,
        retention_days: int,
        *,
        now: Callable[[], datetime] = utcnow,
    ):
        self.jobs = JobRepository(session)
        self.storage = storage
        self.retention_days = retention_days
        self.now = now

    def cleanup(self) -> CleanupResult:
        started = time.monotonic()
        cutoff = self.now() - timedelta(days=self.retention_days)
        result = CleanupResult()
        for job in self.jobs.list_expired(cutoff):
            result.scanned += 1
            try:
                self._purge(job, cutoff, result)
            except ImportServiceError as e:
                result.errors += 1
                logger.warning(f"[ArtifactCleanup] Job {job.id} not purged: {e.message}")
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[ArtifactCleanup] scanned={result.scanned} purged={result.purged} "
            f"errors={result.errors} freed={result.freed_bytes / 1024 / 1024:.2f}MB"
        )
        return result

    def _purge(self, job: ImportJob, cutoff: datetime, result: CleanupResult) -> None:
        freed = self.storage.delete_artifacts(job.id)
        if self.jobs.count_live_references(job.source_file_url, cutoff):
            result.uploads_kept += 1
        else:
            freed += self.storage.delete(job.source_file_url)
        self.jobs.mark_purged(job.id)
        result.purged += 1
        result.freed_bytes += freed
