"""CRUD, duplicate and export/import endpoints for column-mapping profiles."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import SQLAlchemyError

from product_importer.api.dependencies.auth import AdminIdentity, get_current_admin
from product_importer.api.dependencies.services import get_profile_service
from product_importer.api.schemas.mapping_profile import (
    MappingProfileCreate,
    MappingProfileDuplicate,
    MappingProfileExport,
    MappingProfileImport,
    MappingProfileRead,
    MappingProfileUpdate,
)
from product_importer.core.errors import NotFound
from product_importer.services.column_mapping import BUILTIN_PROFILES, get_builtin, is_builtin
from product_importer.services.mapping_profiles import MappingProfileService, profile_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "",
    summary="List own, shared and built-in mapping profiles",
    response_model=list[MappingProfileRead],
)
async def list_profiles(
    search: str | None = Query(None, description="Match against name or description"),
    is_shared: bool | None = Query(None, description="Only shared (true) or private (false) profiles"),
    include_builtin: bool = Query(True, description="Append the built-in profiles"),
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> list[MappingProfileRead]:
    try:
        profiles = [profile_to_dict(p) for p in service.list(identity.user_id, search=search, is_shared=is_shared)]
    except SQLAlchemyError as exc:
        logger.error(f"Database error listing mapping profiles: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve mapping profiles",
        ) from exc
    if include_builtin and is_shared is not False:
        needle = (search or "").lower()
        profiles.extend(
            builtin.to_dict()
            for builtin in BUILTIN_PROFILES.values()
            if needle in builtin.name.lower() or needle in (builtin.description or "").lower()
        )
    return [MappingProfileRead(**profile) for profile in profiles]


@router.post(
    "",
    summary="Create a mapping profile",
    status_code=status.HTTP_201_CREATED,
    response_model=MappingProfileRead,
)
async def create_profile(
    payload: MappingProfileCreate,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileRead:
    profile = service.create(identity.user_id, payload)
    return MappingProfileRead(**profile_to_dict(profile))


@router.post(
    "/import",
    summary="Create a profile from an exported string",
    status_code=status.HTTP_201_CREATED,
    response_model=MappingProfileRead,
)
async def import_profile(
    payload: MappingProfileImport,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileRead:
    profile = service.import_profile(identity.user_id, payload.data, payload.name)
    return MappingProfileRead(**profile_to_dict(profile))


@router.get(
    "/{profile_id}",
    summary="Fetch a mapping profile",
    response_model=MappingProfileRead,
)
async def get_profile(
    profile_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileRead:
    if is_builtin(profile_id):
        builtin = get_builtin(profile_id)
        if builtin is not None:
            return MappingProfileRead(**builtin.to_dict())
    else:
        profile = service.get(profile_id, identity.user_id)
        if profile is not None:
            return MappingProfileRead(**profile_to_dict(profile))
    raise NotFound(f"Mapping profile {profile_id} not found", code="mapping_profile_not_found")


@router.patch(
    "/{profile_id}",
    summary="Update an owned mapping profile",
    response_model=MappingProfileRead,
)
async def update_profile(
    profile_id: str,
    payload: MappingProfileUpdate,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileRead:
    profile = service.update(profile_id, identity.user_id, payload)
    return MappingProfileRead(**profile_to_dict(profile))


@router.delete(
    "/{profile_id}",
    summary="Delete an owned mapping profile",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_profile(
    profile_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> Response:
    service.delete(profile_id, identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{profile_id}/duplicate",
    summary="Copy a visible profile into a new private one",
    status_code=status.HTTP_201_CREATED,
    response_model=MappingProfileRead,
)
async def duplicate_profile(
    profile_id: str,
    payload: MappingProfileDuplicate,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileRead:
    profile = service.duplicate(profile_id, identity.user_id, payload.name)
    return MappingProfileRead(**profile_to_dict(profile))


@router.get(
    "/{profile_id}/export",
    summary="Serialize a profile for sharing",
    response_model=MappingProfileExport,
)
async def export_profile(
    profile_id: str,
    identity: AdminIdentity = Depends(get_current_admin),
    service: MappingProfileService = Depends(get_profile_service),
) -> MappingProfileExport:
    return MappingProfileExport(profile_id=profile_id, data=service.export(profile_id, identity.user_id))
