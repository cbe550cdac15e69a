"""Submission half of the import job orchestrator.

Runs inside the API request: admission, option parsing, the prune safety gate,
source-file checks, then persists the job and hands it to the worker queue.
Rejected submissions never create a job record.
"""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from product_importer.api.schemas.job import ImportJobOptions
from product_importer.core.config import Settings, get_settings
from product_importer.core.errors import (
    DependencyError,
    InvalidOptions,
    InvalidRequest,
    NotFound,
    SourceFileError,
)
from product_importer.db.models.import_job import ImportJob
from product_importer.services import file_reader
from product_importer.services.admission import AdmissionController
from product_importer.services.column_mapping import ProfileLookup, load_profile
from product_importer.services.job_repository import JobRepository, utcnow
from product_importer.services.safety_gate import check_prune_gate
from product_importer.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)

Dispatch = Callable[[str], None]


@dataclass
class SubmissionRequest:
    owner_id: str
    idempotency_key: str | None
    options: dict[str, Any]
    file_content: bytes | None = None
    filename: str | None = None
    source_job_id: str | None = None
    confirm_header: str | None = None
    trace_id: str | None = None


@dataclass
class SubmissionResult:
    job: ImportJob
    created: bool


def new_trace_id() -> str:
    return f"trace_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


def parse_options(raw: dict[str, Any], settings: Settings) -> ImportJobOptions:
    """Validate submitted options, filling unset ones from configuration."""
    values = {
        "mode": settings.import_default_mode,
        "upsert": settings.import_default_upsert,
        "variant_strategy": settings.import_default_variant_strategy,
        "image_strategy": settings.import_default_image_strategy,
        **{key: value for key, value in raw.items() if value is not None},
    }
    try:
        return ImportJobOptions.model_validate(values)
    except ValidationError as exc:
        errors = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        fields = ", ".join(error["field"] for error in errors)
        raise InvalidOptions(
            f"Invalid import options: {fields}",
            details={"errors": errors},
        ) from exc


class ImportSubmissionService:
    def __init__(
        self,
        session: Session,
        storage: ObjectStorage,
        dispatch: Dispatch,
        *,
        profile_lookup: ProfileLookup | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.jobs = JobRepository(session)
        self.admission = AdmissionController(
            self.jobs,
            self.settings.import_max_concurrent,
            self.settings.import_retry_after_seconds,
        )
        self.storage = storage
        self.dispatch = dispatch
        self.profile_lookup = profile_lookup

    def submit(self, request: SubmissionRequest) -> SubmissionResult:
        key = self.admission.require_idempotency_key(request.idempotency_key)
        existing = self.admission.find_existing(request.owner_id, key)
        if existing is not None:
            logger.info(f"Replaying job {existing.id} for idempotency key {key}")
            return SubmissionResult(existing, created=False)

        options = parse_options(request.options, self.settings)
        self.admission.check_capacity(request.owner_id)
        check_prune_gate(
            options.force_prune_missing_variants,
            pruning_enabled=self.settings.import_enable_pruning,
            confirm_header=request.confirm_header,
            confirm_token=options.prune_confirm_token,
        )
        if options.mapping_profile_id:
            load_profile(options.mapping_profile_id, request.owner_id, self.profile_lookup)

        source_url, source_filename = self._resolve_source(request)

        job = ImportJob(
            trace_id=request.trace_id or new_trace_id(),
            idempotency_key=key,
            import_session_id=new_session_id(),
            owner_id=request.owner_id,
            mode=options.mode,
            options=options.stored(),
            mapping_profile_id=options.mapping_profile_id,
            status="created",
            phase="queued",
            source_file_url=source_url,
            source_filename=source_filename,
            source_job_id=request.source_job_id,
            artifacts={},
            warnings=[],
        )
        job, created = self.jobs.create(job)
        if not created:
            return SubmissionResult(job, created=False)

        try:
            self.dispatch(job.id)
        except Exception as exc:
            logger.error(f"Error enqueueing import task for job {job.id}: {exc}", exc_info=True)
            error = DependencyError(
                "Failed to start import process",
                code="queue_unavailable",
                details={"job_id": job.id},
            )
            self.jobs.transition(
                job.id,
                from_statuses=("created",),
                to_status="failed",
                phase="failed",
                error=error.to_api_error().to_dict(),
                completed_at=utcnow(),
            )
            raise error from exc

        logger.info(
            f"Created import job {job.id} ({options.mode}) for {request.owner_id} "
            f"from {source_filename}"
        )
        return SubmissionResult(self.jobs.get_or_404(job.id), created=True)

    def _resolve_source(self, request: SubmissionRequest) -> tuple[str, str | None]:
        if request.source_job_id and request.file_content is not None:
            raise InvalidRequest(
                "Provide either a file or source_job_id, not both",
                code="ambiguous_source",
                details={"fields": ["file", "source_job_id"]},
            )
        if request.source_job_id:
            source = self.jobs.get(request.source_job_id)
            if source is None or not source.source_file_url:
                raise NotFound(
                    f"Source job {request.source_job_id} not found or has no file",
                    code="source_job_not_found",
                    details={"source_job_id": request.source_job_id},
                )
            return source.source_file_url, source.source_filename
        if request.file_content is None:
            raise InvalidRequest(
                "A file upload or source_job_id is required",
                code="file_required",
                details={"fields": ["file", "source_job_id"]},
            )
        return self._store_upload(request), request.filename

    def _store_upload(self, request: SubmissionRequest) -> str:
        content = request.file_content or b""
        kind = file_reader.file_kind(request.filename)
        limit_mb = self.settings.import_max_file_size_mb
        if not content:
            raise SourceFileError("Uploaded file is empty", code="empty_file")
        if len(content) > self.settings.max_file_size_bytes:
            raise SourceFileError(
                f"File exceeds the {limit_mb}MB limit",
                code="file_too_large",
                details={"max_file_size_mb": limit_mb, "size_bytes": len(content)},
            )
        file_reader.read_headers(content, kind)
        rows = file_reader.count_rows(content, kind)
        if rows > self.settings.import_max_rows:
            raise SourceFileError(
                f"File has {rows} rows; the limit is {self.settings.import_max_rows}",
                code="too_many_rows",
                details={"rows": rows, "max_rows": self.settings.import_max_rows},
            )
        return self.storage.put_upload(content, request.filename or "upload", request.owner_id)
