"""Object storage for uploaded sources and generated artifacts (local fs implementation)."""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Protocol

from product_importer.core.config import get_settings
from product_importer.core.errors import NotFound, StorageUnavailable

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._-]+")


class ObjectStorage(Protocol):
    def put_upload(self, content: bytes, filename: str, owner_id: str) -> str: ...

    def put_artifact(self, job_id: str, filename: str, content: bytes, content_type: str) -> str: ...

    def read(self, url: str) -> bytes: ...

    def delete(self, url: str) -> int: ...

    def delete_artifacts(self, job_id: str) -> int: ...


def _safe_segment(value: str) -> str:
    return _UNSAFE_SEGMENT.sub("_", value).strip("._") or "file"


class LocalObjectStorage:
    """Stores objects under ``root`` and addresses them as ``<base_url>/<key>``."""

    def __init__(self, root: str | Path, base_url: str = "/api/files"):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def _write(self, key: str, content: bytes) -> str:
        target = (self.root / key).resolve()
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            logger.error(f"Failed to write object {key}: {e}", exc_info=True)
            raise StorageUnavailable(f"Failed to save file: {e}") from e
        return self._url(key)

    def put_upload(self, content: bytes, filename: str, owner_id: str) -> str:
        suffix = Path(filename or "upload.csv").suffix.lower() or ".csv"
        key = f"uploads/{_safe_segment(owner_id)}/{uuid.uuid4()}{suffix}"
        url = self._write(key, content)
        logger.info(f"Stored upload {filename} ({len(content)} bytes) as {key}")
        return url

    def put_artifact(self, job_id: str, filename: str, content: bytes, content_type: str) -> str:
        key = f"imports/{_safe_segment(job_id)}/artifacts/{_safe_segment(filename)}"
        return self._write(key, content)

    def key_from_url(self, url: str) -> str:
        prefix = f"{self.base_url}/"
        return url[len(prefix):] if url.startswith(prefix) else url

    def path_for(self, key: str) -> Path:
        """Resolve a key to a file path inside the storage root."""
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise NotFound(f"File {key} not found", code="file_not_found")
        return path

    def read(self, url: str) -> bytes:
        path = self.path_for(self.key_from_url(url))
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(f"File {url} not found", code="file_not_found") from e
        except OSError as e:
            logger.error(f"Failed to read object {url}: {e}", exc_info=True)
            raise StorageUnavailable(f"Failed to read file: {e}") from e

    def delete(self, url: str) -> int:
        """Remove one stored object; returns the bytes freed, 0 if it was already gone."""
        path = self.path_for(self.key_from_url(url))
        try:
            size = path.stat().st_size
            path.unlink()
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.error(f"Failed to delete object {url}: {e}", exc_info=True)
            raise StorageUnavailable(f"Failed to delete file: {e}") from e
        return size

    def delete_artifacts(self, job_id: str) -> int:
        """Remove every artifact written for ``job_id``."""
        directory = self.root / "imports" / _safe_segment(job_id)
        if not directory.is_dir():
            return 0
        try:
            size = sum(path.stat().st_size for path in directory.rglob("*") if path.is_file())
            shutil.rmtree(directory)
        except OSError as e:
            logger.error(f"Failed to delete artifacts of job {job_id}: {e}", exc_info=True)
            raise StorageUnavailable(f"Failed to delete artifacts: {e}") from e
        return size


def get_storage() -> LocalObjectStorage:
    settings = get_settings()
    return LocalObjectStorage(settings.storage_dir, settings.public_base_url)
