import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

import uuid
from typing import Any

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from product_importer.api.dependencies.db import get_session, get_session_factory
from product_importer.api.dependencies.services import (
    get_dispatch,
    get_object_storage,
    get_profile_service,
    get_submission_service,
)
from product_importer.api.routers import health
from product_importer.core.config import Settings
from product_importer.db import models  # noqa: F401
from product_importer.db.base import Base
from product_importer.db.models.import_job import ImportJob
from product_importer.main import app
from product_importer.services import progress_tracker
from product_importer.services.catalog import SqlCatalogService
from product_importer.services.import_runner import ImportJobRunner
from product_importer.services.import_submission import (
    Dispatch,
    ImportSubmissionService,
    SubmissionRequest,
)
from product_importer.services.job_repository import JobRepository
from product_importer.services.mapping_profiles import MappingProfileService
from product_importer.storage.object_storage import LocalObjectStorage

ADMIN_TOKEN = "test-admin-token"
OWNER_ID = "user_1"


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.store[key] = value

    def get(self, key: str) -> str | None:
        return self.store.get(key)

    def ping(self) -> bool:
        return True


class RecordingCatalog(SqlCatalogService):
    """SQL catalog that remembers every mutating call."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.calls: list[tuple] = []

    def create_product(self, payload):
        self.calls.append(("create", payload["handle"]))
        return super().create_product(payload)

    def update_product(self, product_id, payload, **kwargs):
        self.calls.append(("update", product_id))
        return super().update_product(product_id, payload, **kwargs)

    def delete_variants(self, product_id, variant_ids):
        self.calls.append(("delete_variants", product_id, list(variant_ids)))
        return super().delete_variants(product_id, variant_ids)


class ProgressRecorder:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def __call__(self, job_id: str, progress: float, message: str | None = None, **kwargs: Any) -> None:
        self.events.append({"job_id": job_id, "progress": progress, "message": message, **kwargs})


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(progress_tracker, "get_redis_client", lambda: fake)
    monkeypatch.setattr(health, "get_redis_client", lambda: fake)
    return fake


@pytest.fixture()
def session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture()
def session(session_factory) -> Session:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        admin_token=ADMIN_TOKEN,
        storage_dir=str(tmp_path / "storage"),
        import_max_concurrent=1,
        import_batch_size=2,
        import_progress_update_interval=1,
        import_rows_per_second=1000,
    )


@pytest.fixture()
def storage(tmp_path) -> LocalObjectStorage:
    return LocalObjectStorage(tmp_path / "storage")


@pytest.fixture()
def dispatched() -> list[str]:
    return []


@pytest.fixture()
def catalog(session) -> RecordingCatalog:
    return RecordingCatalog(session)


@pytest.fixture()
def jobs(session) -> JobRepository:
    return JobRepository(session)


@pytest.fixture()
def profiles(session, jobs) -> MappingProfileService:
    return MappingProfileService(session, jobs.count_active_for_profile)


@pytest.fixture()
def progress() -> ProgressRecorder:
    return ProgressRecorder()


@pytest.fixture()
def submit(session, storage, dispatched, profiles, settings):
    """Create a job through the submission service; returns the ImportJob."""

    def _submit(
        content: bytes | None = None,
        filename: str = "products.csv",
        *,
        owner_id: str = OWNER_ID,
        key: str | None = None,
        settings_override: Settings | None = None,
        confirm_header: str | None = None,
        source_job_id: str | None = None,
        **options: Any,
    ) -> ImportJob:
        service = ImportSubmissionService(
            session,
            storage,
            dispatched.append,
            profile_lookup=profiles.lookup_resolved,
            settings=settings_override or settings,
        )
        result = service.submit(
            SubmissionRequest(
                owner_id=owner_id,
                idempotency_key=key or f"key-{uuid.uuid4().hex}",
                options=options,
                file_content=content,
                filename=filename if content is not None else None,
                confirm_header=confirm_header,
                source_job_id=source_job_id,
            )
        )
        return result.job

    return _submit


@pytest.fixture()
def make_runner(session, storage, catalog, profiles, settings, progress):
    def _make_runner(**overrides: Any) -> ImportJobRunner:
        runner_catalog = overrides.pop("catalog", catalog)
        kwargs: dict[str, Any] = {
            "profile_lookup": profiles.lookup_resolved,
            "settings": settings,
            "progress": progress,
            "sleep": lambda seconds: None,
        }
        kwargs.update(overrides)
        return ImportJobRunner(session, storage, runner_catalog, **kwargs)

    return _make_runner


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN, "X-User-Id": OWNER_ID}


@pytest.fixture()
def client(session, session_factory, storage, dispatched, settings) -> TestClient:
    def _get_session() -> Session:
        return session

    def _get_submission_service(
        profile_service: MappingProfileService = Depends(get_profile_service),
        dispatch: Dispatch = Depends(get_dispatch),
    ) -> ImportSubmissionService:
        return ImportSubmissionService(
            session,
            storage,
            dispatch,
            profile_lookup=profile_service.lookup_resolved,
            settings=settings,
        )

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_object_storage] = lambda: storage
    app.dependency_overrides[get_dispatch] = lambda: dispatched.append
    app.dependency_overrides[get_submission_service] = _get_submission_service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
