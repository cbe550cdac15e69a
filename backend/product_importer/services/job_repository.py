"""Persistence for import job records.

Every status write is a conditional UPDATE that excludes terminal statuses, so
a job that reached ``completed``, ``failed`` or ``canceled`` never moves again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from product_importer.core.errors import Conflict, NotFound
from product_importer.db.models.import_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ImportJob,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, job_id: str) -> ImportJob | None:
        return self.session.get(ImportJob, job_id, populate_existing=True)

    def get_or_404(self, job_id: str) -> ImportJob:
        job = self.get(job_id)
        if job is None:
            raise NotFound(f"Import job {job_id} not found", code="job_not_found", details={"job_id": job_id})
        return job

    def find_by_idempotency_key(self, owner_id: str, idempotency_key: str) -> ImportJob | None:
        return self.session.scalar(
            select(ImportJob).where(
                ImportJob.owner_id == owner_id,
                ImportJob.idempotency_key == idempotency_key,
            )
        )

    def create(self, job: ImportJob) -> tuple[ImportJob, bool]:
        """Insert a job; on a duplicate idempotency key return the existing one.

        Returns ``(job, created)``.
        """
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.find_by_idempotency_key(job.owner_id, job.idempotency_key)
            if existing is None:
                raise
            logger.info(
                f"Idempotency key {job.idempotency_key} already bound to job {existing.id}"
            )
            return existing, False
        self.session.refresh(job)
        return job, True

    def list(
        self,
        owner_id: str | None = None,
        *,
        statuses: Iterable[str] | None = None,
        limit: int = 50,
    ) -> list[ImportJob]:
        query = select(ImportJob)
        if owner_id is not None:
            query = query.where(ImportJob.owner_id == owner_id)
        if statuses:
            query = query.where(ImportJob.status.in_(list(statuses)))
        query = query.order_by(ImportJob.created_at.desc()).limit(limit)
        return list(self.session.scalars(query).all())

    def count_active(self, owner_id: str) -> int:
        return self.session.scalar(
            select(func.count(ImportJob.id)).where(
                ImportJob.owner_id == owner_id,
                ImportJob.status.in_(ACTIVE_STATUSES),
            )
        ) or 0

    def count_active_for_profile(self, profile_id: str) -> int:
        return self.session.scalar(
            select(func.count(ImportJob.id)).where(
                ImportJob.mapping_profile_id == profile_id,
                ImportJob.status.in_(ACTIVE_STATUSES),
            )
        ) or 0

    def transition(
        self,
        job_id: str,
        *,
        from_statuses: Iterable[str],
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the status; returns False when the job was not in ``from_statuses``."""
        allowed = [status for status in from_statuses if status not in TERMINAL_STATUSES]
        result = self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status.in_(allowed))
            .values(status=to_status, **fields)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def claim(self, job_id: str) -> bool:
        """Take single ownership of a freshly created job."""
        return self.transition(
            job_id,
            from_statuses=("created",),
            to_status="validating",
            phase="initializing",
            started_at=utcnow(),
        )

    def update_fields(self, job_id: str, **fields: Any) -> bool:
        """Write counters/phase/etc. together while the job is still active."""
        result = self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.status.not_in(TERMINAL_STATUSES))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def list_expired(self, cutoff: datetime, limit: int = 500) -> list[ImportJob]:
        """Finished jobs older than ``cutoff`` whose files have not been purged yet."""
        query = (
            select(ImportJob)
            .where(
                ImportJob.status.in_(TERMINAL_STATUSES),
                ImportJob.completed_at < cutoff,
                ImportJob.source_file_url.is_not(None),
            )
            .order_by(ImportJob.completed_at)
            .limit(limit)
        )
        return list(self.session.scalars(query).all())

    def count_live_references(self, source_file_url: str, cutoff: datetime) -> int:
        """Jobs still inside retention (or unfinished) that point at the same upload."""
        return self.session.scalar(
            select(func.count(ImportJob.id)).where(
                ImportJob.source_file_url == source_file_url,
                or_(
                    ImportJob.status.not_in(TERMINAL_STATUSES),
                    ImportJob.completed_at.is_(None),
                    ImportJob.completed_at >= cutoff,
                ),
            )
        ) or 0

    def mark_purged(self, job_id: str) -> None:
        # Only file references change; status stays terminal.
        self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(artifacts={}, source_file_url=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def is_cancel_requested(self, job_id: str) -> bool:
        return bool(
            self.session.scalar(select(ImportJob.cancel_requested).where(ImportJob.id == job_id))
        )

    def request_cancel(self, job_id: str) -> ImportJob:
        job = self.get_or_404(job_id)
        if job.is_terminal:
            raise Conflict(
                f"Job {job_id} is already {job.status}",
                code="job_already_finished",
                details={"status": job.status},
            )
        canceled_now = self.transition(
            job_id,
            from_statuses=("created",),
            to_status="canceled",
            phase="canceled",
            cancel_requested=True,
            completed_at=utcnow(),
        )
        if not canceled_now:
            self.update_fields(job_id, cancel_requested=True)
        logger.info(f"Cancellation requested for job {job_id}")
        return self.get_or_404(job_id)
