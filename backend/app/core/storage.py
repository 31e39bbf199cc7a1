"""
Supabase Storage helper functions for file uploads.

Handles all interactions with Supabase Storage buckets:
- uploads: Original user images (under images/)
- models: Generated 3D meshes (under models/)

Public URLs follow `<SUPABASE_URL>/storage/v1/object/public/<bucket>/<path>`,
which is also the pattern the expiry sweeper uses to recover paths.
"""

import random
import re
import string
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from supabase import Client

from app.core.errors import ServiceError
from app.core.logger import get_logger

logger = get_logger(__name__)

PUBLIC_OBJECT_PREFIX = "/storage/v1/object/public"

DEFAULT_MESH_EXTENSION = "glb"
DEFAULT_MESH_CONTENT_TYPE = "model/gltf-binary"

MESH_CONTENT_TYPES = {
    "glb": "model/gltf-binary",
    "gltf": "model/gltf+json",
    "obj": "text/plain",
    "ply": "application/x-ply",
    "fbx": "application/octet-stream",
    "usdz": "model/vnd.usdz+zip",
}


@dataclass(frozen=True)
class StoredObject:
    """A file written to a bucket."""
    bucket: str
    path: str
    public_url: str


def generate_filename(original_name: str, prefix: str = "") -> str:
    """
    Build a collision-resistant filename.

    Format: `<prefix><epoch-ms>-<6 random chars>-<sanitized base name>.<ext>`
    """
    timestamp = int(time.time() * 1000)
    random_suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))

    if "." in original_name:
        base_name, extension = original_name.rsplit(".", 1)
    else:
        base_name, extension = original_name, "bin"
    extension = extension or "bin"

    sanitized = re.sub(r"[^a-zA-Z0-9_-]", "_", base_name[:50]) or "file"
    return f"{prefix}{timestamp}-{random_suffix}-{sanitized}.{extension}"


def infer_mesh_type(mesh_url: str) -> Tuple[str, str]:
    """
    Infer (extension, content type) from the suffix of a mesh URL.

    Unknown or missing suffixes default to GLB.
    """
    path = urlparse(mesh_url).path
    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment:
        extension = last_segment.rsplit(".", 1)[-1].lower()
        if extension in MESH_CONTENT_TYPES:
            return extension, MESH_CONTENT_TYPES[extension]
    return DEFAULT_MESH_EXTENSION, DEFAULT_MESH_CONTENT_TYPE


def extract_storage_path(url: str, bucket: str) -> Optional[str]:
    """
    Recover the in-bucket path from a public object URL.

    Returns None when the URL does not belong to `bucket`.
    """
    if not isinstance(url, str):
        return None
    pattern = re.compile(rf"{re.escape(PUBLIC_OBJECT_PREFIX)}/{re.escape(bucket)}/(.+)$")
    match = pattern.search(url)
    return match.group(1) if match else None


class StorageManager:
    """Handles file uploads to Supabase Storage buckets."""

    def __init__(
        self,
        client: Client,
        supabase_url: str,
        uploads_bucket: str = "uploads",
        models_bucket: str = "models",
        http: Optional[requests.Session] = None,
        download_timeout: float = 60.0,
    ):
        self.client = client
        self.supabase_url = supabase_url.rstrip("/")
        self.uploads_bucket = uploads_bucket
        self.models_bucket = models_bucket
        self.http = http or requests.Session()
        self.download_timeout = download_timeout

    def get_public_url(self, bucket: str, file_path: str) -> str:
        """
        Get the public URL for a file in storage.

        Args:
            bucket: Bucket name
            file_path: File path within bucket

        Returns:
            Public URL to access the file
        """
        return f"{self.supabase_url}{PUBLIC_OBJECT_PREFIX}/{bucket}/{file_path}"

    def upload_file(
        self,
        bucket: str,
        file_path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StoredObject:
        """
        Upload a file to Supabase Storage.

        Args:
            bucket: Bucket name
            file_path: Destination path within bucket
            data: File contents
            content_type: MIME type of the file

        Returns:
            The stored object with its public URL

        Raises:
            ServiceError: If upload fails
        """
        try:
            self.client.storage.from_(bucket).upload(
                path=file_path,
                file=data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "false",
                },
            )
        except Exception as e:
            logger.error(f"Failed to upload file to {bucket}/{file_path}: {str(e)}")
            raise ServiceError(f"Failed to upload file to {bucket}: {str(e)}", cause=e) from e

        public_url = self.get_public_url(bucket, file_path)
        logger.info(f"Uploaded file to {bucket}/{file_path}")
        return StoredObject(bucket=bucket, path=file_path, public_url=public_url)

    def upload_image(self, data: bytes, filename: str, content_type: str = "image/png") -> StoredObject:
        """Upload an original user image under images/."""
        file_path = f"images/{generate_filename(filename)}"
        return self.upload_file(self.uploads_bucket, file_path, data, content_type or "image/png")

    def upload_model(
        self,
        data: bytes,
        source_image_path: str,
        extension: str = DEFAULT_MESH_EXTENSION,
        content_type: str = DEFAULT_MESH_CONTENT_TYPE,
    ) -> StoredObject:
        """Upload a generated mesh under models/, named after its source image."""
        base_name = source_image_path.rsplit("/", 1)[-1]
        if "." in base_name:
            base_name = base_name.rsplit(".", 1)[0]
        base_name = base_name or "model"
        file_path = f"models/{generate_filename(f'{base_name}.{extension}')}"
        return self.upload_file(self.models_bucket, file_path, data, content_type)

    def fetch_remote_file(self, url: str) -> bytes:
        """
        Download bytes from a remote URL (e.g. the inference service's mesh).

        Raises:
            ServiceError: On network failure or non-2xx response
        """
        try:
            response = self.http.get(url, timeout=self.download_timeout)
        except requests.RequestException as e:
            raise ServiceError(f"Failed to download model: {str(e)}", cause=e) from e

        if not response.ok:
            raise ServiceError(f"Failed to download model: {response.status_code} {response.reason}")
        return response.content

    def download_and_store_model(self, mesh_url: str, source_image_path: str) -> StoredObject:
        """Fetch the mesh at `mesh_url` and store it in the models bucket."""
        extension, content_type = infer_mesh_type(mesh_url)
        data = self.fetch_remote_file(mesh_url)
        logger.info(f"Downloaded mesh ({len(data)} bytes, .{extension}) from {mesh_url}")
        return self.upload_model(data, source_image_path, extension, content_type)

    def download(self, bucket: str, file_path: str) -> bytes:
        """Read a stored object back."""
        try:
            return self.client.storage.from_(bucket).download(file_path)
        except Exception as e:
            raise ServiceError(f"Failed to download {bucket}/{file_path}: {str(e)}", cause=e) from e

    def remove(self, bucket: str, paths: Iterable[str]) -> List[str]:
        """
        Delete files from a bucket.

        Deleting paths that no longer exist is not an error.

        Raises:
            ServiceError: If the storage service rejects the request
        """
        paths = list(paths)
        if not paths:
            return []
        try:
            self.client.storage.from_(bucket).remove(paths)
        except Exception as e:
            logger.error(f"Failed to delete {len(paths)} files from {bucket}: {str(e)}")
            raise ServiceError(f"Failed to delete files from {bucket}: {str(e)}", cause=e) from e

        logger.info(f"Deleted {len(paths)} files from {bucket}")
        return paths
