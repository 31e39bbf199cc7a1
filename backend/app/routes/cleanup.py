"""
Cleanup endpoint for expired uploads.

Intended for a scheduler (cron) or manual calls. Requires
`Authorization: Bearer <CLEANUP_SECRET>`.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from app.core.config import Settings
from app.core.dependencies import get_settings, get_sweeper
from app.core.errors import PipelineError
from app.core.logger import get_logger
from app.models.response_models import CleanupCounts, CleanupResponse
from app.services.expiry_sweeper import ExpirySweeper, authorize_cleanup

logger = get_logger(__name__)

router = APIRouter(tags=["Cleanup"])


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    sweeper: ExpirySweeper = Depends(get_sweeper),
):
    """
    Deletes expired uploads, their models and their stored files.
    """
    authorize_cleanup(authorization, settings)

    try:
        report = await sweeper.sweep()
    except PipelineError as e:
        logger.error(f"Cleanup error: {e}")
        raise HTTPException(status_code=500, detail="Cleanup failed")

    message = "No expired uploads to clean up" if report.is_empty else "Cleanup completed"
    return CleanupResponse(
        message=message,
        deleted=CleanupCounts(
            uploads=report.uploads,
            models=report.models,
            images=report.images,
            model_files=report.model_files,
        ),
    )


@router.get("/cleanup", response_model=CleanupResponse)
async def cleanup_expired_get(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
    sweeper: ExpirySweeper = Depends(get_sweeper),
):
    """Same as POST /cleanup, for schedulers that only issue GET requests."""
    return await cleanup_expired(authorization, settings, sweeper)
