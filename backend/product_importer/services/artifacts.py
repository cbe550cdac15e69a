"""Artifact generation for import jobs.

Each artifact kind is written at most once per job. A failure to build or
store an artifact is recorded as a warning and never fails the job.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from openpyxl import load_workbook
from openpyxl.styles import PatternFill

from product_importer.services.file_reader import is_blank_record
from product_importer.services.row_schema import ValidationIssue
from product_importer.storage.object_storage import ObjectStorage

logger = logging.getLogger(__name__)

ARTIFACT_KINDS = (
    "validation_report",
    "error_rows",
    "result_rows",
    "annotated_xlsx",
    "prune_preview",
)

COMMON_ISSUE_LIMIT = 10
AFFECTED_ROWS_LIMIT = 10

STATUS_FILLS = {
    "created": "FF90EE90",
    "updated": "FF87CEEB",
    "failed": "FFFFCCCB",
    "invalid": "FFFFCCCB",
    "skipped": "FFFFFFE0",
}

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@dataclass
class RowResult:
    row_index: int
    status: str
    action: str
    product_id: int | None = None
    handle: str | None = None
    variant_skus: list[str] = field(default_factory=list)
    message: str | None = None


@dataclass
class ErrorRow:
    row_index: int
    cells: list[Any]
    issues: list[ValidationIssue]


def _csv_bytes(header: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _json_bytes(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, indent=2, default=str).encode("utf-8")


class ArtifactGenerator:
    def __init__(self, job_id: str, storage: ObjectStorage, *, trace_id: str | None = None):
        self.job_id = job_id
        self.trace_id = trace_id or job_id
        self.storage = storage
        self.urls: dict[str, str] = {}
        self.warnings: list[str] = []

    def _store(
        self,
        kind: str,
        filename: str,
        content_type: str,
        build: Callable[[], bytes | None],
    ) -> str | None:
        if kind in self.urls:
            return self.urls[kind]
        try:
            content = build()
            if content is None:
                return None
            url = self.storage.put_artifact(self.job_id, filename, content, content_type)
        except Exception as e:
            logger.warning(f"Failed to generate {kind} for job {self.job_id}: {e}", exc_info=True)
            self.warnings.append(f"Failed to generate {kind}: {e}")
            return None
        self.urls[kind] = url
        return url

    def validation_report(
        self,
        issues: Sequence[ValidationIssue],
        *,
        rows_total: int,
        rows_valid: int,
        rows_invalid: int,
        rows_skipped: int,
        configuration: dict[str, Any],
    ) -> str | None:
        def build() -> bytes:
            by_severity: dict[str, list[dict[str, Any]]] = {"warning": [], "error": []}
            common: dict[str, list[int]] = defaultdict(list)
            for issue in issues:
                by_severity.setdefault(issue.severity, []).append(issue.to_dict())
                common[f"{issue.code or 'unknown'}:{issue.severity}"].append(issue.row_index)
            ranked = sorted(common.items(), key=lambda item: len(item[1]), reverse=True)
            report = {
                "job_id": self.job_id,
                "trace_id": self.trace_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "summary": {
                    "total_rows": rows_total,
                    "valid_rows": rows_valid,
                    "invalid_rows": rows_invalid,
                    "skipped_rows": rows_skipped,
                    "warnings_count": len(by_severity["warning"]),
                    "errors_count": len(by_severity["error"]),
                },
                "issues_by_severity": by_severity,
                "common_issues": [
                    {
                        "issue_type": issue_type,
                        "count": len(rows),
                        "affected_rows": rows[:AFFECTED_ROWS_LIMIT],
                    }
                    for issue_type, rows in ranked[:COMMON_ISSUE_LIMIT]
                ],
                "configuration": configuration,
            }
            return _json_bytes(report)

        return self._store("validation_report", "validation_report.json", "application/json", build)

    def error_rows(self, headers: Sequence[str], rows: Sequence[ErrorRow]) -> str | None:
        def build() -> bytes:
            records = []
            for error_row in rows:
                fields = [issue.field or "general" for issue in error_row.issues]
                messages = [issue.message for issue in error_row.issues]
                cells = list(error_row.cells) + [""] * (len(headers) - len(error_row.cells))
                records.append(
                    [
                        error_row.row_index,
                        ";".join(dict.fromkeys(fields)),
                        " | ".join(messages),
                        *cells[: len(headers)],
                    ]
                )
            return _csv_bytes(["row_index", "error_fields", "error_messages", *headers], records)

        return self._store("error_rows", "error_rows.csv", "text/csv", build)

    def result_rows(self, results: Sequence[RowResult]) -> str | None:
        def build() -> bytes:
            return _csv_bytes(
                ["row_index", "status", "action", "product_id", "handle", "variant_skus", "message"],
                [
                    [
                        result.row_index,
                        result.status,
                        result.action,
                        result.product_id if result.product_id is not None else "",
                        result.handle or "",
                        ";".join(result.variant_skus),
                        result.message or "",
                    ]
                    for result in results
                ],
            )

        return self._store("result_rows", "result_rows.csv", "text/csv", build)

    def annotated_xlsx(
        self,
        source: bytes,
        results: Sequence[RowResult],
        issues: Sequence[ValidationIssue],
        *,
        max_size_mb: int = 50,
    ) -> str | None:
        """Copy of the uploaded workbook with ``Import Status``/``Import Notes`` columns."""

        def build() -> bytes | None:
            if len(source) > max_size_mb * 1024 * 1024:
                self.warnings.append(
                    f"Annotated workbook skipped: source exceeds {max_size_mb}MB"
                )
                return None
            notes: dict[int, list[str]] = defaultdict(list)
            for issue in issues:
                notes[issue.row_index].append(f"[{issue.severity.upper()}] {issue.message}")

            workbook = load_workbook(io.BytesIO(source))
            sheet = workbook.worksheets[0]
            # Data rows are located by position; blank rows were skipped when reading.
            data_rows = [
                row[0].row
                for row in sheet.iter_rows(min_row=1)
                if not is_blank_record([cell.value for cell in row])
            ]
            header_row = data_rows[0] if data_rows else 1
            status_col = sheet.max_column + 1
            notes_col = status_col + 1
            sheet.cell(row=header_row, column=status_col, value="Import Status")
            sheet.cell(row=header_row, column=notes_col, value="Import Notes")

            for result in results:
                position = result.row_index
                if position >= len(data_rows):
                    continue
                excel_row = data_rows[position]
                status_cell = sheet.cell(row=excel_row, column=status_col, value=result.status)
                fill = STATUS_FILLS.get(result.status)
                if fill:
                    status_cell.fill = PatternFill(fill_type="solid", fgColor=fill)
                row_notes = notes.get(result.row_index, [])
                if result.message:
                    row_notes = [*row_notes, result.message]
                if row_notes:
                    sheet.cell(row=excel_row, column=notes_col, value="\n".join(row_notes))

            output = io.BytesIO()
            workbook.save(output)
            return output.getvalue()

        return self._store("annotated_xlsx", "annotated_input.xlsx", XLSX_CONTENT_TYPE, build)

    def prune_preview(self, entries: Sequence[dict[str, Any]], *, executed: bool) -> str | None:
        def build() -> bytes:
            return _json_bytes(
                {
                    "job_id": self.job_id,
                    "generated_at": datetime.now(timezone.utc).isoformat(),
                    "executed": executed,
                    "variant_count": len(entries),
                    "variants": list(entries),
                }
            )

        return self._store("prune_preview", "prune_preview.json", "application/json", build)
