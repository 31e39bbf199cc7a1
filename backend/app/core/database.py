"""
Database helper functions for writing to Supabase tables.

Provides clean interfaces for inserting, updating and deleting the
`uploads` and `models` records used by the generation pipeline and
the expiry sweeper.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from supabase import Client

from app.core.errors import InvalidStatusTransition, ServiceError
from app.core.logger import get_logger
from app.models.records import (
    Model,
    ModelFormat,
    Upload,
    UploadStatus,
    UploadWithModels,
    can_transition,
)

logger = get_logger(__name__)

UPLOADS_TABLE = "uploads"
MODELS_TABLE = "models"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseManager:
    """Handles all record operations for the pipeline and the sweeper."""

    def __init__(self, client: Client):
        self.client = client

    # ==================== UPLOADS ====================

    def create_upload(
        self,
        image_url: str,
        status: UploadStatus = UploadStatus.PROCESSING,
        user_id: Optional[str] = None,
        retention_days: Optional[int] = None,
    ) -> Upload:
        """
        Create a new upload entry.

        Args:
            image_url: Public URL of the stored source image
            status: Initial status (pending or processing)
            user_id: Optional owner
            retention_days: When set, expires_at = now + retention_days

        Returns:
            The created upload
        """
        data: Dict[str, Any] = {
            "image_url": image_url,
            "status": UploadStatus(status).value,
        }
        if user_id:
            data["user_id"] = user_id
        if retention_days:
            data["expires_at"] = (_utcnow() + timedelta(days=retention_days)).isoformat()

        try:
            response = self.client.table(UPLOADS_TABLE).insert(data).execute()
        except Exception as e:
            raise ServiceError(f"Failed to create upload: {str(e)}", cause=e) from e

        upload = Upload(**response.data[0])
        logger.info(f"Created upload {upload.id} ({upload.status.value})")
        return upload

    def get_upload(self, upload_id: str) -> Optional[Upload]:
        """Retrieve an upload, or None if it does not exist."""
        try:
            response = self.client.table(UPLOADS_TABLE).select("*").eq("id", upload_id).execute()
        except Exception as e:
            raise ServiceError(f"Failed to get upload: {str(e)}", cause=e) from e
        return Upload(**response.data[0]) if response.data else None

    def update_upload_status(self, upload_id: str, status: UploadStatus) -> Upload:
        """
        Move an upload to a new status.

        Raises:
            InvalidStatusTransition: If the move would regress a terminal upload
            ServiceError: If the upload does not exist or the write fails
        """
        status = UploadStatus(status)
        current = self.get_upload(upload_id)
        if current is None:
            raise ServiceError(f"Failed to update upload status: upload {upload_id} not found")
        if not can_transition(current.status, status):
            raise InvalidStatusTransition(
                f"Upload {upload_id} cannot move from {current.status.value} to {status.value}"
            )
        if current.status == status:
            return current

        # Guard against a concurrent writer having moved the row meanwhile
        allowed_from = [s.value for s in UploadStatus if can_transition(s, status) and s != status]
        try:
            response = (
                self.client.table(UPLOADS_TABLE)
                .update({"status": status.value})
                .eq("id", upload_id)
                .in_("status", allowed_from)
                .execute()
            )
        except Exception as e:
            raise ServiceError(f"Failed to update upload status: {str(e)}", cause=e) from e

        if not response.data:
            raise InvalidStatusTransition(
                f"Upload {upload_id} changed status concurrently; refusing to set {status.value}"
            )

        logger.info(f"Upload {upload_id} status updated to {status.value}")
        return Upload(**response.data[0])

    def get_upload_with_models(self, upload_id: str) -> Optional[UploadWithModels]:
        """Retrieve an upload together with its generated models."""
        upload = self.get_upload(upload_id)
        if upload is None:
            return None
        models = self.get_models_for_uploads([upload_id])
        return UploadWithModels(**upload.model_dump(), models=models)

    def get_user_uploads(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Upload]:
        """Get a page of a user's uploads, newest first."""
        try:
            response = (
                self.client.table(UPLOADS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except Exception as e:
            raise ServiceError(f"Failed to get user uploads: {str(e)}", cause=e) from e
        return [Upload(**row) for row in response.data or []]

    def get_recent_uploads(self, limit: int = 10) -> List[UploadWithModels]:
        """Get the most recent completed uploads with their models (gallery)."""
        try:
            response = (
                self.client.table(UPLOADS_TABLE)
                .select("*")
                .eq("status", UploadStatus.COMPLETED.value)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            raise ServiceError(f"Failed to get recent uploads: {str(e)}", cause=e) from e

        uploads = [Upload(**row) for row in response.data or []]
        if not uploads:
            return []

        models = self.get_models_for_uploads([u.id for u in uploads])
        return [
            UploadWithModels(**u.model_dump(), models=[m for m in models if m.upload_id == u.id])
            for u in uploads
        ]

    def get_expired_uploads(self, now: Optional[datetime] = None) -> List[Upload]:
        """Get uploads whose expires_at is in the past."""
        now = now or _utcnow()
        try:
            response = (
                self.client.table(UPLOADS_TABLE)
                .select("*")
                .lt("expires_at", now.isoformat())
                .execute()
            )
        except Exception as e:
            raise ServiceError(f"Failed to fetch expired uploads: {str(e)}", cause=e) from e
        return [Upload(**row) for row in response.data or []]

    def delete_uploads(self, upload_ids: List[str]) -> int:
        """Delete many uploads at once; models cascade. Returns the id count."""
        if not upload_ids:
            return 0
        try:
            self.client.table(UPLOADS_TABLE).delete().in_("id", upload_ids).execute()
        except Exception as e:
            raise ServiceError(f"Failed to delete records: {str(e)}", cause=e) from e
        logger.info(f"Deleted {len(upload_ids)} uploads")
        return len(upload_ids)

    # ==================== MODELS ====================

    def create_model(self, upload_id: str, model_url: str, format: ModelFormat) -> Model:
        """
        Save a generated model.

        Returns:
            The created model
        """
        data = {
            "upload_id": upload_id,
            "model_url": model_url,
            "format": ModelFormat(format).value,
        }
        try:
            response = self.client.table(MODELS_TABLE).insert(data).execute()
        except Exception as e:
            raise ServiceError(f"Failed to create model: {str(e)}", cause=e) from e

        model = Model(**response.data[0])
        logger.info(f"Saved model {model.id} ({model.format.value}) for upload {upload_id}")
        return model

    def get_models_for_uploads(self, upload_ids: List[str]) -> List[Model]:
        """Get every model belonging to the given uploads."""
        if not upload_ids:
            return []
        try:
            response = (
                self.client.table(MODELS_TABLE)
                .select("*")
                .in_("upload_id", upload_ids)
                .execute()
            )
        except Exception as e:
            raise ServiceError(f"Failed to get models: {str(e)}", cause=e) from e
        return [Model(**row) for row in response.data or []]
