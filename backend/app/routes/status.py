"""
Status endpoints for polling uploads and browsing generated models.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from app.core.database import DatabaseManager
from app.core.dependencies import get_public_database
from app.core.errors import PipelineError
from app.core.logger import get_logger
from app.models.records import Upload, UploadWithModels

logger = get_logger(__name__)

router = APIRouter(prefix="/status", tags=["Status"])


@router.get("/recent", response_model=List[UploadWithModels])
def get_recent_uploads(
    limit: int = Query(10, ge=1, le=50),
    database: DatabaseManager = Depends(get_public_database),
):
    """Most recent completed uploads with their models (gallery)."""
    try:
        return database.get_recent_uploads(limit=limit)
    except PipelineError as e:
        logger.error(f"Failed to get recent uploads: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/user/{user_id}", response_model=List[Upload])
def get_user_uploads(
    user_id: UUID,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    database: DatabaseManager = Depends(get_public_database),
):
    """A page of one user's uploads, newest first."""
    try:
        return database.get_user_uploads(str(user_id), limit=limit, offset=offset)
    except PipelineError as e:
        logger.error(f"Failed to get uploads for user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{upload_id}", response_model=UploadWithModels)
def get_upload_status(
    upload_id: UUID,
    database: DatabaseManager = Depends(get_public_database),
):
    """
    Get the status of an upload and any models generated for it.
    """
    try:
        upload = database.get_upload_with_models(str(upload_id))
    except PipelineError as e:
        logger.error(f"Failed to get status for upload {upload_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload
