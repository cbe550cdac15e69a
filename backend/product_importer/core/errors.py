"""Error taxonomy shared by the API layer and the import worker."""

from dataclasses import dataclass
from typing import Any


@dataclass
class ApiError:
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ImportServiceError(Exception):
    """Base class for errors that carry a stable code and an HTTP status."""

    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or None

    def to_api_error(self) -> ApiError:
        return ApiError(code=self.code, message=self.message, details=self.details)

    def headers(self) -> dict[str, str] | None:
        return None


class InvalidRequest(ImportServiceError):
    status_code = 400
    code = "invalid_request"


class MissingIdempotencyKey(InvalidRequest):
    code = "idempotency_key_required"

    def __init__(self) -> None:
        super().__init__(
            "Idempotency-Key header required",
            details={"header": "Idempotency-Key"},
        )


class InvalidOptions(InvalidRequest):
    code = "invalid_options"


class InvalidProfileExport(InvalidRequest):
    code = "invalid_profile_export"


class PruneConfirmationRequired(InvalidRequest):
    code = "prune_confirmation_required"


class Unauthorized(ImportServiceError):
    status_code = 401
    code = "unauthorized"


class PermissionDenied(ImportServiceError):
    status_code = 403
    code = "permission_denied"


class PruningDisabled(ImportServiceError):
    status_code = 403
    code = "pruning_disabled"


class NotFound(ImportServiceError):
    status_code = 404
    code = "not_found"


class Conflict(ImportServiceError):
    status_code = 409
    code = "conflict"


class ConcurrencyLimitExceeded(ImportServiceError):
    status_code = 429
    code = "concurrency_limit_exceeded"

    def __init__(self, active_jobs: int, limit: int, retry_after: int):
        super().__init__(
            f"Maximum concurrent imports ({limit}) reached",
            details={
                "active_jobs": active_jobs,
                "limit": limit,
                "retry_after": retry_after,
                "retryable": True,
            },
        )
        self.retry_after = retry_after

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after)}


class DependencyError(ImportServiceError):
    status_code = 502
    code = "dependency_error"


class StorageUnavailable(DependencyError):
    code = "storage_unavailable"


class CatalogUnavailable(DependencyError):
    """The catalog cannot accept writes at all; fatal to the job."""

    code = "catalog_unavailable"


class CatalogWriteError(DependencyError):
    """A single catalog call was rejected; scoped to one row."""

    code = "catalog_write_failed"


class SourceFileError(InvalidRequest):
    code = "invalid_source_file"