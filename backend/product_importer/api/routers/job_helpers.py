"""Shared helpers for shaping job responses."""
from __future__ import annotations

from product_importer.api.schemas.job import (
    JobCounters,
    JobError,
    JobOptionsEcho,
    JobPerformance,
    JobProgress,
    JobStatusResponse,
)
from product_importer.db.models.import_job import ImportJob
from product_importer.services import job_stats

API_PREFIX = "/api/imports/jobs"


def job_links(job_id: str) -> dict[str, str]:
    return {
        "status": f"{API_PREFIX}/{job_id}",
        "cancel": f"{API_PREFIX}/{job_id}/cancel",
        "artifacts": f"{API_PREFIX}/{job_id}/artifacts",
    }


def serialize_job(job: ImportJob, progress_payload: dict | None = None) -> JobStatusResponse:
    """Combine DB state + cached progress snapshot into a response schema.

    Counters always come from the job row; the snapshot only contributes its
    message, since it may lag behind the database.
    """
    progress_payload = progress_payload or {}
    rows_processed = job.rows_processed or 0

    end = job.completed_at if job.is_terminal else None
    elapsed = job_stats.elapsed_seconds(job.started_at, end)
    rate = job_stats.processing_rate(rows_processed, elapsed)
    eta = None
    if not job.is_terminal:
        eta = job_stats.estimated_seconds_remaining(rows_processed, job.rows_total, rate)
    duration_ms = int(elapsed * 1000) if job.started_at and job.completed_at else None

    message = progress_payload.get("message")
    if not message:
        total_display = job.rows_total if job.rows_total is not None else "?"
        message = f"Processed {rows_processed}/{total_display} rows"

    return JobStatusResponse(
        job_id=job.id,
        trace_id=job.trace_id,
        idempotency_key=job.idempotency_key,
        import_session_id=job.import_session_id,
        status=job.status,
        phase=job.phase,
        mode=job.mode,
        cancel_requested=bool(job.cancel_requested),
        source_filename=job.source_filename,
        source_job_id=job.source_job_id,
        progress=JobProgress(
            percentage=100.0 if job.status == "completed" else job_stats.percentage(rows_processed, job.rows_total),
            rows_total=job.rows_total,
            rows_processed=rows_processed,
            rows_valid=job.rows_valid or 0,
            rows_invalid=job.rows_invalid or 0,
            rows_skipped=job.rows_skipped or 0,
        ),
        counters=JobCounters(
            created=job.created_count or 0,
            updated=job.updated_count or 0,
            failed=job.failed_count or 0,
            pruned=job.pruned_count or 0,
        ),
        performance=JobPerformance(
            processing_rate=rate,
            estimated_time_remaining=eta,
            started_at=job.started_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            duration_ms=duration_ms,
        ),
        artifacts={kind: url for kind, url in (job.artifacts or {}).items() if url},
        options=JobOptionsEcho.model_validate({**(job.options or {}), "mode": job.mode}),
        warnings=list(job.warnings or []),
        error=JobError(**job.error) if job.error else None,
        message=message,
        created_at=job.created_at,
    )
