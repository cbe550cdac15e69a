"""Import job request/response payloads."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ImportJobOptions(BaseModel):
    """Options accepted on submission; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    mode: Literal["dry_run", "execute"] = "dry_run"
    upsert: Literal["off", "handle", "sku", "external_id"] = "off"
    variant_strategy: Literal["explicit", "default_type"] = "explicit"
    image_strategy: Literal["merge", "replace", "append"] = "replace"
    skip_image_validation: bool = False
    unarchive: bool = False
    force_prune_missing_variants: bool = False
    prune_confirm_token: str | None = None
    column_mapping: dict[str, str] | None = None
    mapping_profile_id: str | None = None

    def stored(self) -> dict[str, Any]:
        """Options persisted on the job record (the confirmation token is not kept)."""
        return self.model_dump(exclude={"mode", "prune_confirm_token"})


class LimitsApplied(BaseModel):
    max_file_size_mb: int
    max_rows: int
    max_concurrent: int
    rows_per_second: float
    batch_size: int


class JobConfiguration(BaseModel):
    dry_run: bool
    upsert_by: str
    variant_strategy: str
    image_strategy: str
    force_prune: bool
    mapping_profile_id: str | None = None
    limits_applied: LimitsApplied


class JobLinks(BaseModel):
    status: str
    cancel: str
    artifacts: str


class JobSubmissionResponse(BaseModel):
    job_id: str
    trace_id: str
    idempotency_key: str
    import_session_id: str
    status: str
    mode: str
    configuration: JobConfiguration
    message: str
    links: JobLinks


class JobProgress(BaseModel):
    percentage: float = Field(..., description="0-100 range for UI progress bars")
    rows_total: int | None = None
    rows_processed: int = 0
    rows_valid: int = 0
    rows_invalid: int = 0
    rows_skipped: int = 0


class JobCounters(BaseModel):
    created: int = 0
    updated: int = 0
    failed: int = 0
    pruned: int = 0


class JobPerformance(BaseModel):
    processing_rate: float = Field(0.0, description="Rows per second")
    estimated_time_remaining: int | None = Field(None, description="Seconds; null while the rate is 0")
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class JobError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class JobOptionsEcho(BaseModel):
    """Options echoed on the status endpoint; other stored keys are not exposed."""

    mode: str
    upsert: str = "off"
    variant_strategy: str = "explicit"
    image_strategy: str = "replace"
    skip_image_validation: bool = False
    unarchive: bool = False
    force_prune_missing_variants: bool = False
    column_mapping: dict[str, str] | None = None
    mapping_profile_id: str | None = None
    resolved_mapping: dict[str, str] | None = None


class JobStatusResponse(BaseModel):
    job_id: str
    trace_id: str
    idempotency_key: str
    import_session_id: str
    status: str
    phase: str
    mode: str
    cancel_requested: bool = False
    source_filename: str | None = None
    source_job_id: str | None = None
    progress: JobProgress
    counters: JobCounters
    performance: JobPerformance
    artifacts: dict[str, str] = Field(default_factory=dict)
    options: JobOptionsEcho
    warnings: list[str] = Field(default_factory=list)
    error: JobError | None = None
    message: str | None = None
    created_at: datetime | None = None


class JobArtifacts(BaseModel):
    job_id: str
    status: str
    artifacts: dict[str, str]
