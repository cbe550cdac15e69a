"""Import job submission, tracking and cancellation endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from product_importer.api.dependencies.auth import AdminIdentity, get_current_admin
from product_importer.api.dependencies.db import get_session_factory
from product_importer.api.dependencies.services import get_job_repository, get_submission_service
from product_importer.api.routers.job_helpers import job_links, serialize_job
from product_importer.api.schemas.job import (
    JobArtifacts,
    JobConfiguration,
    JobLinks,
    JobStatusResponse,
    JobSubmissionResponse,
    LimitsApplied,
)
from product_importer.core.config import get_settings
from product_importer.core.errors import InvalidOptions, NotFound
from product_importer.db.models.import_job import TERMINAL_STATUSES, ImportJob
from product_importer.services.import_submission import ImportSubmissionService, SubmissionRequest
from product_importer.services.job_repository import JobRepository
from product_importer.services.progress_tracker import fetch_progress

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_INTERVAL_SECONDS = 2
STREAM_MAX_IDLE_POLLS = 150


def _owned_job(jobs: JobRepository, job_id: str, identity: AdminIdentity) -> ImportJob:
    job = jobs.get(job_id)
    if job is None or job.owner_id != identity.user_id:
        raise NotFound(f"Import job {job_id} not found", code="job_not_found", details={"job_id": job_id})
    return job


def _parse_column_mapping(raw: str | None) -> dict | None:
    if raw is None or not raw.strip():
        return None
    try:
        mapping = json.loads(raw)
    except ValueError as exc:
        raise InvalidOptions(
            "column_mapping_json is not valid JSON",
            details={"errors": [{"field": "column_mapping_json", "message": str(exc)}]},
        ) from exc
    if not isinstance(mapping, dict):
        raise InvalidOptions(
            "column_mapping_json must be a JSON object of source column to field",
            details={"errors": [{"field": "column_mapping_json", "message": "expected an object"}]},
        )
    return mapping


def _submission_response(job: ImportJob, replayed: bool) -> JobSubmissionResponse:
    settings = get_settings()
    options = job.options or {}
    if replayed:
        message = "Existing job returned for this idempotency key"
    elif job.mode == "dry_run":
        message = "Dry-run queued; no catalog changes will be made"
    else:
        message = "Import queued for execution"
    return JobSubmissionResponse(
        job_id=job.id,
        trace_id=job.trace_id,
        idempotency_key=job.idempotency_key,
        import_session_id=job.import_session_id,
        status=job.status,
        mode=job.mode,
        configuration=JobConfiguration(
            dry_run=job.mode == "dry_run",
            upsert_by=options.get("upsert", "off"),
            variant_strategy=options.get("variant_strategy", "explicit"),
            image_strategy=options.get("image_strategy", "replace"),
            force_prune=bool(options.get("force_prune_missing_variants")),
            mapping_profile_id=options.get("mapping_profile_id"),
            limits_applied=LimitsApplied(
                max_file_size_mb=settings.import_max_file_size_mb,
                max_rows=settings.import_max_rows,
                max_concurrent=settings.import_max_concurrent,
                rows_per_second=settings.import_rows_per_second,
                batch_size=settings.import_batch_size,
            ),
        ),
        message=message,
        links=JobLinks(**job_links(job.id)),
    )


@router.post(
    "",
    summary="Submit a product import job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSubmissionResponse,
)
async def submit_import_job(
    response: Response,
    file: UploadFile | None = File(None),
    source_job_id: str | None = Form(None),
    mode: str | None = Form(None),
    upsert: str | None = Form(None),
    variant_strategy: str | None = Form(None),
    image_strategy: str | None = Form(None),
    skip_image_validation: str | None = Form(None),
    unarchive: str | None = Form(None),
    force_prune_missing_variants: str | None = Form(None),
    prune_confirm_token: str | None = Form(None),
    column_mapping_json: str | None = Form(None),
    mapping_profile_id: str | None = Form(None),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    x_confirm_prune: str | None = Header(None, alias="X-Confirm-Prune"),
    x_trace_id: str | None = Header(None, alias="X-Trace-Id"),
    identity: AdminIdentity = Depends(get_current_admin),
    service: ImportSubmissionService = Depends(get_submission_service),
) -> JobSubmissionResponse:
    """Accept a CSV/XLSX upload (or a prior job's file) and queue it.

    Replaying an idempotency key already used by this user returns the
    original job with HTTP 200.
    """
    options = {
        "mode": mode,
        "upsert": upsert,
        "variant_strategy": variant_strategy,
        "image_strategy": image_strategy,
        "skip_image_validation": skip_image_validation,
        "unarchive": unarchive,
        "force_prune_missing_variants": force_prune_missing_variants,
        "prune_confirm_token": prune_confirm_token,
        "mapping_profile_id": mapping_profile_id or None,
    }
    content = None
    filename = None
    if file is not None:
        await file.seek(0)
        content = await file.read()
        filename = file.filename

    try:
        options["column_mapping"] = _parse_column_mapping(column_mapping_json)
        result = service.submit(
            SubmissionRequest(
                owner_id=identity.user_id,
                idempotency_key=idempotency_key,
                options=options,
                file_content=content,
                filename=filename,
                source_job_id=source_job_id or None,
                confirm_header=x_confirm_prune,
                trace_id=x_trace_id,
            )
        )
    except SQLAlchemyError as exc:
        logger.error(f"Database error creating import job: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc

    if not result.created:
        response.status_code = status.HTTP_200_OK
    return _submission_response(result.job, replayed=not result.created)


@router.get(
    "",
    summary="List your import jobs",
    response_model=list[JobStatusResponse],
)
async def list_import_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status_filter: str | None = Query(None, alias="status", description="Filter by job status"),
    identity: AdminIdentity = Depends(get_current_admin),
    jobs: JobRepository = Depends(get_job_repository),
) -> list[JobStatusResponse]:
    """Newest first."""
    try:
        records = jobs.list(
            identity.user_id,
            statuses=[status_filter] if status_filter else None,
            limit=limit,
        )
    except SQLAlchemyError as exc:
        logger.error(f"Database error listing import jobs: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve jobs",
        ) from exc
    return [serialize_job(job) for job in records]


@router.get(
    "/{job_id}",
    summary="Fetch job status, progress and artifacts",
    response_model=JobStatusResponse,
)
async def get_import_job(
    job_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    jobs: JobRepository = Depends(get_job_repository),
) -> JobStatusResponse:
    try:
        job = _owned_job(jobs, job_id, identity)
    except SQLAlchemyError as exc:
        logger.error(f"Database error fetching job status {job_id}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve job status",
        ) from exc
    return serialize_job(job, fetch_progress(job_id))


@router.get(
    "/{job_id}/artifacts",
    summary="List generated artifact URLs",
    response_model=JobArtifacts,
)
async def get_import_job_artifacts(
    job_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    jobs: JobRepository = Depends(get_job_repository),
) -> JobArtifacts:
    job = _owned_job(jobs, job_id, identity)
    return JobArtifacts(
        job_id=job.id,
        status=job.status,
        artifacts={kind: url for kind, url in (job.artifacts or {}).items() if url},
    )


@router.post(
    "/{job_id}/cancel",
    summary="Cancel a queued or running job",
    response_model=JobStatusResponse,
)
async def cancel_import_job(
    job_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    jobs: JobRepository = Depends(get_job_repository),
) -> JobStatusResponse:
    """Queued jobs are canceled at once; running jobs stop at the next row."""
    _owned_job(jobs, job_id, identity)
    job = jobs.request_cancel(job_id)
    return serialize_job(job)


@router.get(
    "/{job_id}/stream",
    summary="Server-Sent Events stream for real-time progress",
)
async def stream_import_job(
    job_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    jobs: JobRepository = Depends(get_job_repository),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> StreamingResponse:
    """Emit a ``data:`` event with the job status on every poll.

    The stream closes with ``event: close`` once the job reaches a terminal
    status, or ``event: timeout`` when nothing changes for too long.
    """
    _owned_job(jobs, job_id, identity)

    async def event_generator() -> AsyncGenerator[str, None]:
        last_processed = -1
        idle_polls = 0
        # The request session closes when the handler returns.
        session = session_factory()
        try:
            while True:
                job = session.get(ImportJob, job_id, populate_existing=True)
                if job is None:
                    yield "event: error\ndata: {\"error\": \"Job not found\"}\n\n"
                    break
                payload = serialize_job(job, fetch_progress(job_id))
                session.commit()

                if payload.progress.rows_processed != last_processed:
                    last_processed = payload.progress.rows_processed
                    idle_polls = 0
                else:
                    idle_polls += 1

                yield f"data: {payload.model_dump_json()}\n\n"

                if payload.status in TERMINAL_STATUSES:
                    yield "event: close\ndata: {}\n\n"
                    break
                if idle_polls > STREAM_MAX_IDLE_POLLS:
                    yield "event: timeout\ndata: {}\n\n"
                    break
                await asyncio.sleep(STREAM_INTERVAL_SECONDS)
        finally:
            session.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
