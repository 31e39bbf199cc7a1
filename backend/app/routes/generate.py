"""
Handles photo-to-3D generation requests.

Responsibilities:
- Accept an uploaded image (multipart) or a data URL / image URL (JSON)
- Run the generation pipeline
- Map failures onto 400 / 401 / 429 / 500 responses
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.core.dependencies import get_pipeline
from app.core.errors import ImageValidationError, classify_error
from app.core.logger import get_logger
from app.models.request_models import GenerateRequest, GenerationParams
from app.models.response_models import GenerateResponse
from app.services.pipeline_manager import GenerationResult, PipelineManager

logger = get_logger(__name__)

router = APIRouter(tags=["Generate"])


def _success(result: GenerationResult) -> GenerateResponse:
    return GenerateResponse(
        success=True,
        upload_id=result.upload_id,
        image_url=result.image_url,
        model_url=result.model_url,
        expires_at=result.expires_at,
    )


def _failure(error: Exception) -> JSONResponse:
    status_code = classify_error(error)
    if status_code >= 500:
        logger.error(f"3D generation error: {error}")
    else:
        logger.warning(f"3D generation rejected ({status_code}): {error}")
    body = GenerateResponse(success=False, error=str(error) or "Unknown error occurred")
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def _owner(user_id: Optional[UUID]) -> Optional[str]:
    return str(user_id) if user_id else None


def _params(mc_resolution: Optional[int], foreground_ratio: Optional[float]) -> GenerationParams:
    values = {}
    if mc_resolution is not None:
        values["mc_resolution"] = mc_resolution
    if foreground_ratio is not None:
        values["foreground_ratio"] = foreground_ratio
    try:
        return GenerationParams(**values)
    except ValidationError as e:
        raise ImageValidationError(f"Invalid generation parameters: {e.errors()[0]['msg']}") from e


@router.post("/generate", response_model=GenerateResponse)
async def generate_from_upload(
    image: Optional[UploadFile] = File(None),
    mc_resolution: Optional[int] = Form(None),
    foreground_ratio: Optional[float] = Form(None),
    user_id: Optional[UUID] = Form(None),
    pipeline: PipelineManager = Depends(get_pipeline),
):
    """
    Generates a 3D model from an uploaded image file.
    """
    try:
        params = _params(mc_resolution, foreground_ratio)
        if image is None:
            raise ImageValidationError("No image provided")

        if image.size is not None:
            pipeline.preprocessor.check_size(image.size)
        data = await image.read()
        result = await pipeline.run_pipeline(
            data,
            image.content_type,
            filename=image.filename or "input.png",
            params=params,
            owner=_owner(user_id),
            declared_size=image.size,
        )
        return _success(result)
    except Exception as e:
        return _failure(e)


@router.get("/generate")
async def describe_generate_from_upload():
    """Schema documentation for POST /generate."""
    return {
        "status": "ok",
        "endpoint": "/generate",
        "method": "POST",
        "content_type": "multipart/form-data",
        "body": {
            "image": "file (required, image/*, max 10 MB)",
            "mc_resolution": "number (optional, default: 256)",
            "foreground_ratio": "number (optional, default: 0.85)",
            "user_id": "UUID (optional)",
        },
    }


@router.post("/generate-3d", response_model=GenerateResponse)
async def generate_from_source(
    body: GenerateRequest,
    pipeline: PipelineManager = Depends(get_pipeline),
):
    """
    Generates a 3D model from a base64 data URL or an HTTP(S) image URL.
    """
    try:
        result = await pipeline.run_from_source(body.image, params=body, owner=_owner(body.user_id))
        return _success(result)
    except Exception as e:
        return _failure(e)


@router.get("/generate-3d")
async def describe_generate_from_source():
    """Schema documentation for POST /generate-3d."""
    return {
        "status": "ok",
        "endpoint": "/generate-3d",
        "method": "POST",
        "body": {
            "image": "string (base64 data URL or HTTP URL)",
            "mc_resolution": "number (optional, default: 256)",
            "foreground_ratio": "number (optional, default: 0.85)",
            "user_id": "UUID (optional)",
        },
    }
