"""
Pydantic models for the persisted records.

Responsibilities:
- Mirror the `uploads` and `models` tables
- Encode the upload status state machine
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


# Forward order of the non-failure path
_STATUS_ORDER = {
    UploadStatus.PENDING: 0,
    UploadStatus.PROCESSING: 1,
    UploadStatus.COMPLETED: 2,
}


def can_transition(current: UploadStatus, new: UploadStatus) -> bool:
    """
    Check whether an upload may move from `current` to `new`.

    Terminal states never change; any non-terminal state may fail;
    otherwise status only moves forward.
    """
    if current == new:
        return True
    if current.is_terminal:
        return False
    if new == UploadStatus.FAILED:
        return True
    return _STATUS_ORDER[new] > _STATUS_ORDER[current]


class ModelFormat(str, Enum):
    GLB = "glb"
    GLTF = "gltf"
    OBJ = "obj"
    FBX = "fbx"
    USDZ = "usdz"


class Upload(BaseModel):
    """One user-submitted image and its generation lifecycle."""
    id: str
    user_id: Optional[str] = Field(None, description="Owner, absent for anonymous uploads")
    image_url: str
    status: UploadStatus = UploadStatus.PENDING
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class Model(BaseModel):
    """One generated mesh tied to an upload."""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    upload_id: str
    model_url: str
    format: ModelFormat
    created_at: Optional[datetime] = None


class UploadWithModels(Upload):
    models: List[Model] = Field(default_factory=list)
