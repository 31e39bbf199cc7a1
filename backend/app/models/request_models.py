"""
Pydantic models for API request validation.

Responsibilities:
- Define schemas for incoming JSON payloads
- Validate data types and required fields
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class GenerationParams(BaseModel):
    """Generation knobs forwarded to the image-to-3D model."""
    mc_resolution: int = Field(256, ge=32, le=1024, description="Marching cubes resolution")
    foreground_ratio: float = Field(0.85, gt=0, le=1, description="Share of the frame the object fills")


class GenerateRequest(GenerationParams):
    image: str = Field(..., description="Base64 data URL (data:image/...) or HTTP(S) URL")
    user_id: Optional[UUID] = Field(None, description="Owner id (auth user UUID)")
