"""
Download endpoint for blobs kept on the local storage backend.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

import core.config as config
from core.services import blob_storage

router = APIRouter()


@router.get(config.LOCAL_STORAGE_URL_PREFIX + "/{storage_id}")
def get_blob(storage_id: str):
    if config.STORAGE_BACKEND != "local" or not storage_id.isalnum():
        raise HTTPException(status_code=404, detail="Not found")
    try:
        metadata = blob_storage.get_metadata(storage_id)
        data = blob_storage.read(storage_id) if metadata else None
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Not found") from exc
    if data is None:
        raise HTTPException(status_code=404, detail="Not found")
    return Response(
        content=data,
        media_type=metadata.get("content_type") or "application/octet-stream",
    )
