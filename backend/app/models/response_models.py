"""
Pydantic models for API response schemas.

Responsibilities:
- Define standard response structures
- Ensure consistent API output
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


class GenerateResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    success: bool
    upload_id: Optional[str] = None
    image_url: Optional[str] = None
    model_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class CleanupCounts(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    uploads: int = 0
    models: int = 0
    images: int = 0
    model_files: int = 0


class CleanupResponse(BaseModel):
    message: str
    deleted: CleanupCounts


class HealthResponse(BaseModel):
    healthy: bool
    details: Dict[str, bool]
