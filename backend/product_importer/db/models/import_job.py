"""Import job record: the single source of truth for status, phase and counters."""

import uuid

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from product_importer.db.base import Base, JSONType

ACTIVE_STATUSES = ("created", "validating", "processing")
TERMINAL_STATUSES = ("completed", "failed", "canceled")


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    trace_id = Column(String(64), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    import_session_id = Column(String(64), nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)

    mode = Column(String(16), nullable=False, default="dry_run")
    options = Column(JSONType, nullable=False, default=dict)
    mapping_profile_id = Column(String(64), index=True)

    status = Column(String(32), nullable=False, default="created")
    phase = Column(String(32), nullable=False, default="queued")
    cancel_requested = Column(Boolean, nullable=False, default=False)

    source_file_url = Column(Text)
    source_filename = Column(String(255))
    source_job_id = Column(String(36))

    rows_total = Column(Integer)
    rows_processed = Column(Integer, nullable=False, default=0)
    rows_valid = Column(Integer, nullable=False, default=0)
    rows_invalid = Column(Integer, nullable=False, default=0)
    rows_skipped = Column(Integer, nullable=False, default=0)
    created_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    pruned_count = Column(Integer, nullable=False, default=0)

    artifacts = Column(JSONType, nullable=False, default=dict)
    warnings = Column(JSONType, nullable=False, default=list)
    error = Column(JSONType)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("owner_id", "idempotency_key", name="uq_import_jobs_owner_key"),
        Index("ix_import_jobs_owner_status", "owner_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
