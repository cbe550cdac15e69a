"""Service wiring for routers; tests override these."""

from fastapi import Depends
from sqlalchemy.orm import Session

from product_importer.api.dependencies.db import get_session
from product_importer.services.import_submission import Dispatch, ImportSubmissionService
from product_importer.services.job_repository import JobRepository
from product_importer.services.mapping_profiles import MappingProfileService
from product_importer.storage.object_storage import LocalObjectStorage, get_storage
from product_importer.workers.tasks.import_products import enqueue_import_job


def get_object_storage() -> LocalObjectStorage:
    return get_storage()


def get_dispatch() -> Dispatch:
    return enqueue_import_job


def get_job_repository(db: Session = Depends(get_session)) -> JobRepository:
    return JobRepository(db)


def get_profile_service(
    db: Session = Depends(get_session),
    jobs: JobRepository = Depends(get_job_repository),
) -> MappingProfileService:
    return MappingProfileService(db, jobs.count_active_for_profile)


def get_submission_service(
    db: Session = Depends(get_session),
    storage: LocalObjectStorage = Depends(get_object_storage),
    dispatch: Dispatch = Depends(get_dispatch),
    profiles: MappingProfileService = Depends(get_profile_service),
) -> ImportSubmissionService:
    return ImportSubmissionService(
        db,
        storage,
        dispatch,
        profile_lookup=profiles.lookup_resolved,
    )
