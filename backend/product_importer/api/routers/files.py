"""Serve stored uploads and generated artifacts."""

from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from product_importer.api.dependencies.auth import AdminIdentity, get_current_admin
from product_importer.api.dependencies.services import get_object_storage
from product_importer.core.errors import NotFound
from product_importer.storage.object_storage import LocalObjectStorage

router = APIRouter()


@router.get("/{key:path}", summary="Download a stored file")
async def download_file(
    key: str,
    identity: AdminIdentity = Depends(get_current_admin),
    storage: LocalObjectStorage = Depends(get_object_storage),
) -> FileResponse:
    path = storage.path_for(key)
    if not path.is_file():
        raise NotFound(f"File {key} not found", code="file_not_found")
    media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return FileResponse(path, media_type=media_type, filename=path.name)
