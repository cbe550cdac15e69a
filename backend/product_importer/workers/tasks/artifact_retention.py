"""Periodic purge of expired import files."""

from __future__ import annotations

from typing import Any

from product_importer.core.config import get_settings
from product_importer.db.session import get_fresh_session
from product_importer.services.artifact_retention import ArtifactRetention
from product_importer.storage.object_storage import get_storage
from product_importer.workers.celery_app import celery_app


@celery_app.task(name="product_importer.workers.tasks.purge_expired_artifacts")
def purge_expired_artifacts() -> dict[str, Any]:
    session = get_fresh_session()
    try:
        retention = ArtifactRetention(session, get_storage(), get_settings().artifacts_retention_days)
        return retention.cleanup().to_dict()
    finally:
        session.close()
