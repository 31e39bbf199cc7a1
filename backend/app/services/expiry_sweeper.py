"""
Expiry sweeper for uploads past their retention window.

Responsibilities:
- Find expired uploads and their models
- Delete the backing image and mesh blobs (best effort)
- Delete the upload records; models cascade
- Authorize the external trigger with a shared secret

The sweep is idempotent: once the records are gone a second run finds
nothing. Blob and record deletion are not transactional; if record deletion
fails after blobs are removed, the next run re-deletes the already-absent
blobs harmlessly.
"""

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.core.config import Settings
from app.core.database import DatabaseManager
from app.core.errors import AuthError
from app.core.logger import get_logger
from app.core.storage import StorageManager, extract_storage_path
from app.core.utils import run_blocking, utcnow
from app.services.retry import best_effort

logger = get_logger(__name__)


@dataclass(frozen=True)
class SweepReport:
    uploads: int = 0
    models: int = 0
    images: int = 0
    model_files: int = 0

    @property
    def is_empty(self) -> bool:
        return self.uploads == 0


def authorize_cleanup(authorization: Optional[str], settings: Settings):
    """
    Check the bearer token presented by the cleanup trigger.

    With no secret configured the sweep is only allowed when
    ALLOW_INSECURE_CLEANUP is set.

    Raises:
        AuthError: If the token is absent or wrong
    """
    secret = settings.CLEANUP_SECRET
    if not secret:
        if settings.ALLOW_INSECURE_CLEANUP:
            logger.warning("Cleanup running without a shared secret (ALLOW_INSECURE_CLEANUP)")
            return
        raise AuthError("Unauthorized: cleanup secret is not configured")

    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise AuthError("Unauthorized")


class ExpirySweeper:
    def __init__(self, storage: StorageManager, database: DatabaseManager):
        self.storage = storage
        self.database = database

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Delete every upload whose expires_at is before `now`, with its models and blobs.

        Raises:
            ServiceError: If the expired records cannot be read or deleted
        """
        now = now or utcnow()

        expired_uploads = await run_blocking(self.database.get_expired_uploads, now)
        if not expired_uploads:
            logger.info("No expired uploads to clean up")
            return SweepReport()

        upload_ids = [u.id for u in expired_uploads]
        expired_models = await run_blocking(self.database.get_models_for_uploads, upload_ids)

        image_paths = self._paths_for(
            [u.image_url for u in expired_uploads], self.storage.uploads_bucket
        )
        model_paths = self._paths_for(
            [m.model_url for m in expired_models], self.storage.models_bucket
        )

        images_outcome = await best_effort(
            lambda: run_blocking(self.storage.remove, self.storage.uploads_bucket, image_paths),
            "image blob deletion",
        )
        models_outcome = await best_effort(
            lambda: run_blocking(self.storage.remove, self.storage.models_bucket, model_paths),
            "model blob deletion",
        )
        if not (images_outcome.ok and models_outcome.ok):
            logger.error("Blob deletion incomplete; records are deleted regardless")

        await run_blocking(self.database.delete_uploads, upload_ids)

        report = SweepReport(
            uploads=len(expired_uploads),
            models=len(expired_models),
            images=len(image_paths),
            model_files=len(model_paths),
        )
        logger.info(f"Cleanup completed: {report}")
        return report

    @staticmethod
    def _paths_for(urls: List[str], bucket: str) -> List[str]:
        paths = []
        for url in urls:
            path = extract_storage_path(url, bucket)
            if path is None:
                logger.warning(f"Skipping blob with unrecognized URL for bucket {bucket}: {url}")
                continue
            paths.append(path)
        return paths
