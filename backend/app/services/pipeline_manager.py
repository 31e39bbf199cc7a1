"""
Orchestrator for the photo-to-3D generation pipeline.

Responsibilities:
- Validate and preprocess the uploaded image
- Persist the image and create the upload record
- Call the inference gateway with retry and store the resulting mesh
- Create the model record and drive the upload to a terminal status

Steps run strictly in sequence; each one needs the previous step's output.
A failure after the upload record exists marks the upload `failed`
(best effort) and re-raises the original error. The source image blob is
left in place for the expiry sweeper to reclaim.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from app.core.database import DatabaseManager
from app.core.errors import ImageValidationError
from app.core.logger import get_logger
from app.core.storage import StorageManager, infer_mesh_type
from app.core.utils import run_blocking
from app.models.records import ModelFormat, UploadStatus
from app.models.request_models import GenerationParams
from app.services.image_preprocessor import ImagePreprocessor, decode_data_url
from app.services.inference_gateway import InferenceGateway, InferenceRequest
from app.services.retry import (
    INFERENCE_INITIAL_DELAY,
    INFERENCE_MAX_RETRIES,
    STORAGE_INITIAL_DELAY,
    STORAGE_MAX_RETRIES,
    Sleep,
    best_effort,
    with_retry,
)

logger = get_logger(__name__)

EXTERNAL_IMAGE_PATH = "external"


@dataclass(frozen=True)
class GenerationResult:
    upload_id: str
    image_url: str
    image_path: str
    model_id: str
    model_url: str
    model_path: str
    format: ModelFormat
    expires_at: Optional[datetime] = None


def model_format_for(extension: str) -> ModelFormat:
    """Record format for a stored mesh; extensions outside the enum are recorded as GLB."""
    try:
        return ModelFormat(extension.lower())
    except ValueError:
        logger.warning(f"Mesh extension .{extension} has no record format, recording as glb")
        return ModelFormat.GLB


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _with_extension(filename: str, extension: str) -> str:
    base = filename.rsplit(".", 1)[0] if "." in filename else filename
    return f"{base or 'input'}.{extension}"


class PipelineManager:
    """
    Runs one generation per call. Holds no per-request state, so a single
    instance serves concurrent requests.
    """

    def __init__(
        self,
        storage: StorageManager,
        database: DatabaseManager,
        gateway: InferenceGateway,
        preprocessor: Optional[ImagePreprocessor] = None,
        preprocess_enabled: bool = True,
        retention_days: int = 60,
        sleep: Sleep = asyncio.sleep,
    ):
        self.storage = storage
        self.database = database
        self.gateway = gateway
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.preprocess_enabled = preprocess_enabled
        self.retention_days = retention_days
        self.sleep = sleep

    async def run_pipeline(
        self,
        image_data: Optional[bytes],
        content_type: Optional[str],
        filename: str = "input.png",
        params: Optional[GenerationParams] = None,
        owner: Optional[str] = None,
        declared_size: Optional[int] = None,
    ) -> GenerationResult:
        """
        Executes the full generation pipeline for an uploaded image.

        Raises:
            ImageValidationError: Before any storage or network call
            PipelineError: Classified storage, inference or auth failures
        """
        params = params or GenerationParams()

        # 1. Validate
        self.preprocessor.validate(image_data, content_type, declared_size)

        # 2. Preprocess
        if self.preprocess_enabled:
            processed = self.preprocessor.preprocess(image_data)
            image_data, content_type = processed.data, processed.content_type
            filename = _with_extension(filename or "input", "jpg")

        # 3. Persist source image
        logger.info("[Pipeline] Uploading image to storage...")
        stored_image = await self._with_storage_retry(
            lambda: run_blocking(self.storage.upload_image, image_data, filename, content_type),
            "image upload",
        )
        logger.info(f"[Pipeline] Image uploaded: {stored_image.path}")

        return await self._generate(stored_image.public_url, stored_image.path, params, owner)

    async def run_from_source(
        self,
        image: Optional[str],
        params: Optional[GenerationParams] = None,
        owner: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate from a base64 data URL or from an existing HTTP(S) image URL.

        External URLs are passed to the model as-is and no image blob is written.
        """
        if not image:
            raise ImageValidationError("Image is required")

        if image.startswith("data:image/"):
            image_data, content_type = decode_data_url(image)
            return await self.run_pipeline(image_data, content_type, "input.png", params, owner)

        if _is_http_url(image):
            return await self._generate(image, EXTERNAL_IMAGE_PATH, params or GenerationParams(), owner)

        raise ImageValidationError("Invalid image format. Provide base64 data URL or HTTP URL")

    async def _generate(
        self,
        image_url: str,
        image_path: str,
        params: GenerationParams,
        owner: Optional[str],
    ) -> GenerationResult:
        # 4. Create upload record
        upload = await self._with_storage_retry(
            lambda: run_blocking(
                self.database.create_upload,
                image_url,
                UploadStatus.PROCESSING,
                owner,
                self.retention_days if self.retention_days > 0 else None,
            ),
            "upload record creation",
        )

        try:
            # 5. Invoke the inference gateway
            logger.info(f"[Pipeline] Running 3D generation for upload {upload.id}...")
            request = InferenceRequest(
                image_url=image_url,
                mc_resolution=params.mc_resolution,
                foreground_ratio=params.foreground_ratio,
            )
            mesh = await with_retry(
                lambda: self.gateway.generate(request),
                max_retries=INFERENCE_MAX_RETRIES,
                initial_delay=INFERENCE_INITIAL_DELAY,
                sleep=self.sleep,
                description="3D generation",
            )
            logger.info(f"[Pipeline] 3D model generated: {mesh.mesh_url}")

            # 6. Fetch and persist the mesh
            stored_model = await self._with_storage_retry(
                lambda: run_blocking(self.storage.download_and_store_model, mesh.mesh_url, image_path),
                "model storage",
            )
            logger.info(f"[Pipeline] Model stored: {stored_model.path}")

            # 7. Create model record
            extension, _ = infer_mesh_type(stored_model.path)
            model_format = model_format_for(extension)
            model = await self._with_storage_retry(
                lambda: run_blocking(
                    self.database.create_model, upload.id, stored_model.public_url, model_format
                ),
                "model record creation",
            )

            # 8. Complete the upload
            await self._with_storage_retry(
                lambda: run_blocking(self.database.update_upload_status, upload.id, UploadStatus.COMPLETED),
                "upload status update",
            )
        except Exception as e:
            logger.error(f"[Pipeline] Generation failed for upload {upload.id}: {e}")
            await self._mark_failed(upload.id, image_path)
            raise

        logger.info(f"[Pipeline] Upload {upload.id} completed")
        return GenerationResult(
            upload_id=upload.id,
            image_url=image_url,
            image_path=image_path,
            model_id=model.id,
            model_url=stored_model.public_url,
            model_path=stored_model.path,
            format=model.format,
            expires_at=upload.expires_at,
        )

    async def _mark_failed(self, upload_id: str, image_path: str):
        outcome = await best_effort(
            lambda: run_blocking(self.database.update_upload_status, upload_id, UploadStatus.FAILED),
            f"status update for upload {upload_id}",
        )
        if not outcome.ok:
            logger.error(f"[Pipeline] Upload {upload_id} could not be marked failed: {outcome.error}")

        if image_path != EXTERNAL_IMAGE_PATH:
            logger.warning(
                f"[Pipeline] Source image {image_path} retained for failed upload {upload_id} until expiry"
            )

    async def _with_storage_retry(self, operation, description: str):
        return await with_retry(
            operation,
            max_retries=STORAGE_MAX_RETRIES,
            initial_delay=STORAGE_INITIAL_DELAY,
            sleep=self.sleep,
            description=description,
        )
