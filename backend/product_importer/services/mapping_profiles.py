"""CRUD, sharing and default semantics for column-mapping profiles."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from product_importer.api.schemas.mapping_profile import (
    MappingProfileCreate,
    MappingProfileUpdate,
)
from product_importer.core.errors import (
    Conflict,
    InvalidProfileExport,
    NotFound,
    PermissionDenied,
)
from product_importer.db.models.mapping_profile import MappingProfile
from product_importer.services.column_mapping import (
    DEFAULT_PROFILE_SETTINGS,
    ResolvedProfile,
    get_builtin,
    is_builtin,
)

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"

ActiveJobLookup = Callable[[str], int]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MappingProfileService:
    """Profile persistence scoped to the requesting owner.

    ``active_job_lookup`` returns how many active import jobs reference a
    profile id; deletion is refused while it is non-zero.
    """

    def __init__(self, session: Session, active_job_lookup: ActiveJobLookup):
        self.session = session
        self.active_job_lookup = active_job_lookup

    # -- reads -------------------------------------------------------------

    def list(
        self,
        owner_id: str,
        *,
        search: str | None = None,
        is_shared: bool | None = None,
    ) -> list[MappingProfile]:
        query = select(MappingProfile).where(
            or_(MappingProfile.owner_id == owner_id, MappingProfile.is_shared.is_(True))
        )
        if is_shared is not None:
            query = query.where(MappingProfile.is_shared.is_(is_shared))
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(MappingProfile.name.ilike(pattern), MappingProfile.description.ilike(pattern))
            )
        query = query.order_by(MappingProfile.is_default.desc(), MappingProfile.updated_at.desc())
        return list(self.session.scalars(query).all())

    def get(self, profile_id: str, owner_id: str) -> MappingProfile | None:
        profile = self.session.get(MappingProfile, profile_id)
        if profile is None:
            return None
        if profile.owner_id != owner_id and not profile.is_shared:
            return None
        return profile

    def get_default(self, owner_id: str) -> MappingProfile | None:
        return self.session.scalar(
            select(MappingProfile).where(
                MappingProfile.owner_id == owner_id, MappingProfile.is_default.is_(True)
            )
        )

    def lookup_resolved(self, profile_id: str, owner_id: str) -> ResolvedProfile | None:
        """Adapter used by the column mapping resolver."""
        profile = self.get(profile_id, owner_id)
        if profile is None:
            return None
        return ResolvedProfile(
            id=profile.id,
            name=profile.name,
            description=profile.description,
            mapping=dict(profile.mapping or {}),
            settings={**DEFAULT_PROFILE_SETTINGS, **(profile.settings or {})},
        )

    # -- writes ------------------------------------------------------------

    def create(self, owner_id: str, data: MappingProfileCreate) -> MappingProfile:
        settings = dict(DEFAULT_PROFILE_SETTINGS)
        if data.settings is not None:
            settings.update(data.settings.model_dump(exclude_none=True))
        profile = MappingProfile(
            name=data.name,
            description=data.description,
            owner_id=owner_id,
            mapping=dict(data.mapping),
            settings=settings,
            is_default=bool(data.is_default),
            is_shared=bool(data.is_shared),
            meta=data.metadata,
        )
        try:
            if profile.is_default:
                self._clear_default(owner_id)
            self.session.add(profile)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(f"Concurrent default change for owner {owner_id}: {exc}")
            raise Conflict("Another default profile was set concurrently; retry") from exc
        self.session.refresh(profile)
        logger.info(f"Created mapping profile {profile.id} for owner {owner_id}")
        return profile

    def update(self, profile_id: str, owner_id: str, data: MappingProfileUpdate) -> MappingProfile:
        profile = self._get_owned(profile_id, owner_id, action="update")
        changes = data.model_dump(exclude_unset=True)

        try:
            if changes.get("is_default") and not profile.is_default:
                self._clear_default(owner_id, keep_id=profile.id)
            for name in ("name", "description", "is_default", "is_shared"):
                if name in changes and changes[name] is not None:
                    setattr(profile, name, changes[name])
            if changes.get("mapping") is not None:
                profile.mapping = dict(changes["mapping"])
            if changes.get("settings") is not None:
                profile.settings = {
                    **(profile.settings or {}),
                    **{k: v for k, v in changes["settings"].items() if v is not None},
                }
            if "metadata" in changes:
                profile.meta = changes["metadata"]
            profile.updated_at = datetime.now(timezone.utc)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Another default profile was set concurrently; retry") from exc
        self.session.refresh(profile)
        return profile

    def delete(self, profile_id: str, owner_id: str) -> None:
        profile = self._get_owned(profile_id, owner_id, action="delete")
        active_jobs = self.active_job_lookup(profile_id)
        if active_jobs > 0:
            raise Conflict(
                f"Cannot delete profile: currently in use by {active_jobs} active import job(s)",
                code="mapping_profile_in_use",
                details={"active_jobs": active_jobs},
            )
        self.session.delete(profile)
        self.session.commit()
        logger.info(f"Deleted mapping profile {profile_id}")

    def duplicate(self, profile_id: str, owner_id: str, new_name: str) -> MappingProfile:
        source = self._get_visible(profile_id, owner_id)
        metadata = {
            **(source.get("metadata") or {}),
            "duplicated_from": profile_id,
            "duplicated_at": _now_iso(),
        }
        return self.create(
            owner_id,
            MappingProfileCreate(
                name=new_name,
                description=f"Duplicated from {source['name']}",
                mapping=source["mapping"],
                settings=source["settings"],
                is_default=False,
                is_shared=False,
                metadata=metadata,
            ),
        )

    def export(self, profile_id: str, owner_id: str) -> str:
        source = self._get_visible(profile_id, owner_id)
        envelope = {
            "version": EXPORT_VERSION,
            "exported_at": _now_iso(),
            "profile": {
                "name": source["name"],
                "description": source["description"],
                "mapping": source["mapping"],
                "settings": source["settings"],
                "metadata": source.get("metadata"),
            },
        }
        return json.dumps(envelope, indent=2)

    def import_profile(self, owner_id: str, serialized: str, name: str | None = None) -> MappingProfile:
        try:
            data = json.loads(serialized)
        except (TypeError, ValueError) as exc:
            raise InvalidProfileExport(f"Failed to import profile: {exc}") from exc
        if not isinstance(data, dict) or not data.get("version") or not isinstance(data.get("profile"), dict):
            raise InvalidProfileExport("Failed to import profile: invalid profile export format")

        exported = data["profile"]
        mapping = exported.get("mapping")
        if not isinstance(mapping, dict) or not exported.get("name"):
            raise InvalidProfileExport("Failed to import profile: profile name and mapping are required")

        metadata = {
            **(exported.get("metadata") or {}),
            "imported_at": _now_iso(),
            "import_version": data["version"],
        }
        try:
            payload = MappingProfileCreate(
                name=name or f"{exported['name']} (Imported)",
                description=exported.get("description") or f"Imported on {_now_iso()}",
                mapping=mapping,
                settings=exported.get("settings"),
                is_default=False,
                is_shared=False,
                metadata=metadata,
            )
        except ValueError as exc:
            raise InvalidProfileExport(f"Failed to import profile: {exc}") from exc
        return self.create(owner_id, payload)

    # -- helpers -----------------------------------------------------------

    def _clear_default(self, owner_id: str, keep_id: str | None = None) -> None:
        statement = (
            update(MappingProfile)
            .where(MappingProfile.owner_id == owner_id, MappingProfile.is_default.is_(True))
            .values(is_default=False)
        )
        if keep_id is not None:
            statement = statement.where(MappingProfile.id != keep_id)
        self.session.execute(statement)

    def _get_owned(self, profile_id: str, owner_id: str, *, action: str) -> MappingProfile:
        if is_builtin(profile_id):
            raise PermissionDenied(
                f"Built-in profile {profile_id} is read-only",
                code="builtin_profile_read_only",
            )
        profile = self.get(profile_id, owner_id)
        if profile is None:
            raise NotFound(f"Mapping profile {profile_id} not found", code="mapping_profile_not_found")
        if profile.owner_id != owner_id:
            raise PermissionDenied(f"You can only {action} your own mapping profiles")
        return profile

    def _get_visible(self, profile_id: str, owner_id: str) -> dict[str, Any]:
        if is_builtin(profile_id):
            builtin = get_builtin(profile_id)
            if builtin is not None:
                return builtin.to_dict()
        else:
            profile = self.get(profile_id, owner_id)
            if profile is not None:
                return profile_to_dict(profile)
        raise NotFound(f"Mapping profile {profile_id} not found", code="mapping_profile_not_found")


def profile_to_dict(profile: MappingProfile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "name": profile.name,
        "description": profile.description,
        "owner_id": profile.owner_id,
        "mapping": dict(profile.mapping or {}),
        "settings": {**DEFAULT_PROFILE_SETTINGS, **(profile.settings or {})},
        "is_default": profile.is_default,
        "is_shared": profile.is_shared,
        "is_builtin": False,
        "metadata": profile.meta,
        "created_at": profile.created_at,
        "updated_at": profile.updated_at,
    }
