"""Execution half of the import job orchestrator.

The runner drives one job through a fixed sequence of states::

    created -> validating -> processing -> completed
                         \\-> failed      \\-> failed | canceled

Every transition is a compare-and-set on the job row, so a second worker
picking up the same job id loses the claim and returns without doing work.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy.orm import Session

from product_importer.core.config import Settings, get_settings
from product_importer.core.errors import (
    ApiError,
    CatalogWriteError,
    ImportServiceError,
)
from product_importer.db.models.import_job import ImportJob
from product_importer.services import file_reader
from product_importer.services.artifacts import ArtifactGenerator, ErrorRow, RowResult
from product_importer.services.catalog import CatalogProduct, CatalogService
from product_importer.services.column_mapping import ProfileLookup, resolve_mapping
from product_importer.services.job_repository import JobRepository, utcnow
from product_importer.services.job_stats import (
    advance_phase,
    elapsed_seconds,
    phase_for_progress,
    processing_rate,
)
from product_importer.services.product_payload import build_product_payload, variant_skus
from product_importer.services.progress_tracker import publish_progress
from product_importer.services.row_schema import (
    ProductRow,
    ValidationIssue,
    merge_mapped_row,
    validate_row,
)
from product_importer.storage.object_storage import ObjectStorage
from product_importer.utils.batching import chunked
from product_importer.utils.throttle import Throttle

logger = logging.getLogger(__name__)

ProgressPublisher = Callable[..., None]


@dataclass
class RunState:
    """Mutable bookkeeping for a single run; persisted via ``counters()``."""

    job: ImportJob
    phase: str = "initializing"
    content: bytes = b""
    kind: str = "csv"
    headers: list[str] = field(default_factory=list)
    mapping: dict[str, str] = field(default_factory=dict)
    rows_total: int = 0
    rows_processed: int = 0
    rows_valid: int = 0
    rows_invalid: int = 0
    rows_skipped: int = 0
    created_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    pruned_count: int = 0
    issues: list[ValidationIssue] = field(default_factory=list)
    error_rows: list[ErrorRow] = field(default_factory=list)
    results: list[RowResult] = field(default_factory=list)
    # product id -> (handle, SKUs seen in the file for that product)
    touched: dict[int, tuple[str | None, set[str]]] = field(default_factory=dict)
    created_ids: set[int] = field(default_factory=set)
    # handles and SKUs (lowercased) that earlier rows of this run create
    planned_handles: set[str] = field(default_factory=set)
    planned_skus: set[str] = field(default_factory=set)
    prune_entries: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def options(self) -> dict[str, Any]:
        return self.job.options or {}

    @property
    def dry_run(self) -> bool:
        return self.job.mode != "execute"

    @property
    def force_prune(self) -> bool:
        return bool(self.options.get("force_prune_missing_variants"))

    def counters(self) -> dict[str, int]:
        return {
            "rows_processed": self.rows_processed,
            "rows_valid": self.rows_valid,
            "rows_invalid": self.rows_invalid,
            "rows_skipped": self.rows_skipped,
            "created_count": self.created_count,
            "updated_count": self.updated_count,
            "failed_count": self.failed_count,
            "pruned_count": self.pruned_count,
        }


class ImportJobRunner:
    def __init__(
        self,
        session: Session,
        storage: ObjectStorage,
        catalog: CatalogService,
        *,
        profile_lookup: ProfileLookup | None = None,
        settings: Settings | None = None,
        progress: ProgressPublisher = publish_progress,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.jobs = JobRepository(session)
        self.session = session
        self.storage = storage
        self.catalog = catalog
        self.profile_lookup = profile_lookup
        self.settings = settings or get_settings()
        self.progress = progress
        self.sleep = sleep

    def run(self, job_id: str) -> str | None:
        """Execute a job; returns its final status, or None if the claim was lost."""
        if not self.jobs.claim(job_id):
            logger.info(f"[ProductImport] Job {job_id} already claimed or no longer pending")
            return None

        state = RunState(job=self.jobs.get_or_404(job_id))
        mode = "dry-run" if state.dry_run else "execution"
        logger.info(f"[ProductImport] Starting {mode} for job {job_id}")
        try:
            self._prepare(state)
            if not self.jobs.transition(
                job_id,
                from_statuses=("validating",),
                to_status="processing",
                phase=state.phase,
            ):
                return self._current_status(job_id)
            outcome = self._process(state)
            return self._finalize(state, outcome)
        except ImportServiceError as exc:
            logger.error(f"[ProductImport] Job {job_id} failed: {exc.message}")
            return self._fail(state, exc.to_api_error())
        except Exception as exc:
            logger.error(f"[ProductImport] Job {job_id} failed unexpectedly: {exc}", exc_info=True)
            return self._fail(
                state,
                ApiError(
                    code="internal_error",
                    message=str(exc) or exc.__class__.__name__,
                    details={"type": exc.__class__.__name__},
                ),
            )

    # -- states ------------------------------------------------------------

    def _prepare(self, state: RunState) -> None:
        job = state.job
        state.content = self.storage.read(job.source_file_url)
        state.kind = file_reader.file_kind(job.source_filename or job.source_file_url)
        state.headers = file_reader.read_headers(state.content, state.kind)
        state.rows_total = file_reader.count_rows(state.content, state.kind)
        state.mapping = resolve_mapping(
            state.headers,
            owner_id=job.owner_id,
            explicit_mapping=state.options.get("column_mapping"),
            profile_id=state.options.get("mapping_profile_id"),
            profile_lookup=self.profile_lookup,
        )
        logger.info(f"[ProductImport] Job {job.id} column mapping: {state.mapping}")
        self.jobs.update_fields(
            job.id,
            rows_total=state.rows_total,
            options={**state.options, "resolved_mapping": state.mapping},
        )
        self._publish(state, "running", f"Parsed {state.rows_total} rows")

    def _process(self, state: RunState) -> str:
        job = state.job
        batch_size = self.settings.import_batch_size
        interval = self.settings.import_progress_update_interval
        throttle = Throttle(self.settings.import_rows_per_second, sleep=self.sleep)

        rows = file_reader.iter_rows(state.content, state.kind)
        for batch_number, batch in enumerate(chunked(rows, batch_size), start=1):
            for row_index, cells in batch:
                if self.jobs.is_cancel_requested(job.id):
                    logger.info(f"[ProductImport] Job {job.id} canceled at row {row_index}")
                    return "canceled"
                self._process_row(state, row_index, cells)
                state.rows_processed += 1
                if state.rows_processed % interval == 0:
                    self._write_progress(state)
            self._write_progress(state)
            logger.info(
                f"[ProductImport] Job {job.id} batch {batch_number}: "
                f"{state.rows_processed}/{state.rows_total} rows"
            )
            if not state.dry_run:
                throttle.wait(len(batch))

        if state.force_prune:
            self._prune(state)
        return "completed"

    def _finalize(self, state: RunState, outcome: str) -> str:
        job = state.job
        state.phase = advance_phase(state.phase, "finalizing")
        self._write_progress(state)

        artifacts = ArtifactGenerator(job.id, self.storage, trace_id=job.trace_id)
        self._write_artifacts(state, artifacts)
        warnings = [*(job.warnings or []), *state.warnings, *artifacts.warnings]

        moved = self.jobs.transition(
            job.id,
            from_statuses=("processing",),
            to_status=outcome,
            phase=outcome,
            completed_at=utcnow(),
            artifacts=artifacts.urls,
            warnings=warnings,
            **state.counters(),
        )
        if not moved:
            return self._current_status(job.id)
        duration = elapsed_seconds(job.started_at)
        logger.info(
            f"[ProductImport] Job {job.id} {outcome}: total={state.rows_total} "
            f"valid={state.rows_valid} invalid={state.rows_invalid} "
            f"created={state.created_count} updated={state.updated_count} "
            f"failed={state.failed_count} pruned={state.pruned_count} "
            f"rate={processing_rate(state.rows_processed, duration)} rows/sec"
        )
        self._publish(state, outcome, f"Import {outcome}")
        return outcome

    def _fail(self, state: RunState, error: ApiError) -> str:
        self.session.rollback()
        moved = self.jobs.transition(
            state.job.id,
            from_statuses=("created", "validating", "processing"),
            to_status="failed",
            phase="failed",
            error=error.to_dict(),
            completed_at=utcnow(),
            **state.counters(),
        )
        if not moved:
            return self._current_status(state.job.id)
        self._publish(state, "failed", error.message)
        return "failed"

    # -- rows --------------------------------------------------------------

    def _process_row(self, state: RunState, row_index: int, cells: list[Any]) -> None:
        raw = merge_mapped_row(state.headers, cells, state.mapping)
        validation = validate_row(
            raw,
            row_index,
            validate_images=not state.options.get("skip_image_validation", False),
        )
        state.issues.extend(validation.issues)

        if not validation.is_valid:
            self._reject(state, row_index, cells, validation.errors)
            return

        row = validation.row
        payload = build_product_payload(
            row,
            variant_strategy=state.options.get("variant_strategy", "explicit"),
            default_sales_channels=self.settings.default_sales_channels,
        )
        skus = variant_skus(payload)
        match = self._find_match(state, row, payload)

        if match is not None and match.status == "archived" and not state.options.get("unarchive"):
            state.rows_valid += 1
            state.rows_skipped += 1
            state.results.append(
                RowResult(
                    row_index,
                    "skipped",
                    "none",
                    product_id=match.id,
                    handle=match.handle,
                    variant_skus=skus,
                    message="Matched product is archived; enable unarchive to update it",
                )
            )
            return

        conflicts = self._catalog_conflicts(state, row_index, payload, skus, match)
        if conflicts:
            state.issues.extend(conflicts)
            self._reject(state, row_index, cells, conflicts)
            return

        state.rows_valid += 1
        if match is None:
            state.planned_handles.add(payload["handle"].lower())
            state.planned_skus.update(sku.lower() for sku in skus)

        if match is not None and match.id not in state.created_ids:
            _, seen = state.touched.setdefault(match.id, (match.handle, set()))
            seen.update(sku.lower() for sku in skus)

        action = "update" if match is not None else "create"
        if state.dry_run:
            state.results.append(
                RowResult(
                    row_index,
                    "validated",
                    action,
                    product_id=match.id if match else None,
                    handle=payload["handle"],
                    variant_skus=skus,
                    message=f"Dry-run: would {action} product",
                )
            )
            return

        try:
            if match is not None:
                product = self.catalog.update_product(
                    match.id,
                    payload,
                    image_strategy=state.options.get("image_strategy", "replace"),
                    unarchive=bool(state.options.get("unarchive")),
                )
                state.updated_count += 1
                status = "updated"
            else:
                product = self.catalog.create_product(payload)
                state.created_ids.add(product.id)
                state.created_count += 1
                status = "created"
        except CatalogWriteError as exc:
            logger.warning(f"[ProductImport] Row {row_index} of job {state.job.id} failed: {exc.message}")
            state.failed_count += 1
            state.results.append(
                RowResult(
                    row_index,
                    "failed",
                    action,
                    product_id=match.id if match else None,
                    handle=payload["handle"],
                    variant_skus=skus,
                    message=exc.message,
                )
            )
            return

        state.results.append(
            RowResult(
                row_index,
                status,
                action,
                product_id=product.id,
                handle=product.handle,
                variant_skus=list(product.variant_skus),
                message=f"Product {status}",
            )
        )

    def _reject(self, state: RunState, row_index: int, cells: list[Any], errors: list[ValidationIssue]) -> None:
        state.rows_invalid += 1
        state.error_rows.append(ErrorRow(row_index, list(cells), errors))
        state.results.append(
            RowResult(
                row_index,
                "invalid",
                "none",
                message="; ".join(issue.message for issue in errors),
            )
        )

    def _catalog_conflicts(
        self,
        state: RunState,
        row_index: int,
        payload: dict[str, Any],
        skus: list[str],
        match: CatalogProduct | None,
    ) -> list[ValidationIssue]:
        """Handle and SKU collisions the catalog would reject on write.

        Checked the same way in dry-run and execute, so a dry run reports
        these rows as invalid instead of promising a create. With upsert off,
        handles and SKUs created by earlier rows of the same file count too.
        """
        upsert = state.options.get("upsert", "off")
        hint = "; enable upsert to update it" if upsert == "off" else ""
        conflicts: list[ValidationIssue] = []
        if match is None:
            handle = payload["handle"]
            taken = (upsert == "off" and handle.lower() in state.planned_handles) or (
                self.catalog.find_product("handle", handle) is not None
            )
            if taken:
                conflicts.append(
                    ValidationIssue(
                        row_index, f"handle '{handle}' already exists{hint}", "handle", "error", "duplicate_handle"
                    )
                )
        for sku in skus:
            if match is None and upsert == "off" and sku.lower() in state.planned_skus:
                clash = True
            else:
                owner = self.catalog.find_product("sku", sku)
                clash = owner is not None and (match is None or owner.id != match.id)
            if clash:
                conflicts.append(
                    ValidationIssue(
                        row_index,
                        f"SKU '{sku}' already belongs to another product{hint}",
                        "sku",
                        "error",
                        "duplicate_sku",
                    )
                )
        return conflicts

    def _find_match(self, state: RunState, row: ProductRow, payload: dict[str, Any]) -> CatalogProduct | None:
        upsert = state.options.get("upsert", "off")
        if upsert == "handle":
            value = payload.get("handle")
        elif upsert == "sku":
            skus = variant_skus(payload)
            value = row.sku or (skus[0] if skus else None)
        elif upsert == "external_id":
            value = row.external_id
        else:
            return None
        if not value:
            return None
        return self.catalog.find_product(upsert, value)

    def _prune(self, state: RunState) -> None:
        """Collect (and in execute mode delete) variants absent from the file."""
        for product_id, (handle, file_skus) in state.touched.items():
            if not file_skus:
                continue
            stale = [
                variant
                for variant in self.catalog.list_variants(product_id)
                if (variant.sku or "").lower() not in file_skus
            ]
            if not stale:
                continue
            state.prune_entries.extend(
                {
                    "product_id": product_id,
                    "handle": handle,
                    "variant_id": variant.id,
                    "sku": variant.sku,
                    "title": variant.title,
                }
                for variant in stale
            )
            if state.dry_run:
                continue
            try:
                state.pruned_count += self.catalog.delete_variants(
                    product_id, [variant.id for variant in stale]
                )
            except CatalogWriteError as exc:
                state.warnings.append(f"Pruning product {product_id} failed: {exc.message}")
        logger.info(
            f"[ProductImport] Job {state.job.id} prune: {len(state.prune_entries)} variant(s) "
            f"{'would be' if state.dry_run else 'were'} removed"
        )

    # -- reporting ---------------------------------------------------------

    def _write_artifacts(self, state: RunState, artifacts: ArtifactGenerator) -> None:
        options = state.options
        artifacts.validation_report(
            state.issues,
            rows_total=state.rows_total,
            rows_valid=state.rows_valid,
            rows_invalid=state.rows_invalid,
            rows_skipped=state.rows_skipped,
            configuration={
                "dry_run": state.dry_run,
                "upsert_by": options.get("upsert", "off"),
                "variant_strategy": options.get("variant_strategy", "explicit"),
                "image_strategy": options.get("image_strategy", "replace"),
                "force_prune": state.force_prune,
            },
        )
        if state.error_rows:
            artifacts.error_rows(state.headers, state.error_rows)
        artifacts.result_rows(state.results)
        if state.kind == "xlsx" and self.settings.artifacts_enable_annotated_xlsx:
            artifacts.annotated_xlsx(
                state.content,
                state.results,
                state.issues,
                max_size_mb=self.settings.artifacts_annotated_xlsx_max_size_mb,
            )
        if state.force_prune:
            artifacts.prune_preview(state.prune_entries, executed=not state.dry_run)

    def _write_progress(self, state: RunState) -> None:
        state.phase = advance_phase(
            state.phase, phase_for_progress(state.rows_processed, state.rows_total)
        )
        self.jobs.update_fields(state.job.id, phase=state.phase, **state.counters())
        self._publish(
            state,
            "processing",
            f"Processed {state.rows_processed}/{state.rows_total} rows",
        )

    def _publish(self, state: RunState, status: str, message: str) -> None:
        fraction = state.rows_processed / state.rows_total if state.rows_total else 0.0
        if status == "completed":
            fraction = 1.0
        self.progress(
            state.job.id,
            fraction,
            message,
            status=status,
            phase=state.phase,
            meta=state.counters() | {"rows_total": state.rows_total},
        )

    def _current_status(self, job_id: str) -> str | None:
        job = self.jobs.get(job_id)
        return job.status if job else None
