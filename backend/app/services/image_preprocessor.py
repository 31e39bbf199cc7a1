"""
Image validation and preprocessing service.

Responsibilities:
- Reject missing, non-image or oversized payloads before any network call
- Decode base64 data URLs sent by JSON clients
- Downscale images to bounded dimensions and re-encode as JPEG
"""

import base64
import binascii
import io
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from app.core.errors import ImageValidationError
from app.core.logger import get_logger

logger = get_logger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)


@dataclass(frozen=True)
class ProcessedImage:
    data: bytes
    content_type: str
    size: Tuple[int, int]
    original_size: Tuple[int, int]


def decode_data_url(data_url: str) -> Tuple[bytes, str]:
    """
    Split a `data:image/...;base64,` URL into (bytes, content type).

    Raises:
        ImageValidationError: If the URL is not a base64 image data URL
    """
    match = DATA_URL_PATTERN.match(data_url.strip())
    if not match:
        raise ImageValidationError("Invalid image format. Provide base64 data URL or HTTP URL")

    content_type, payload = match.groups()
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageValidationError(f"Invalid base64 image data: {e}") from e
    return data, content_type


class ImagePreprocessor:
    """
    Validates and downscales images before storage and submission.
    """

    MAX_UPLOAD_BYTES = 10 * 1024 * 1024
    MAX_WIDTH = 512
    MAX_HEIGHT = 512
    QUALITY = 80
    OUTPUT_FORMAT = "JPEG"
    OUTPUT_CONTENT_TYPE = "image/jpeg"

    def __init__(
        self,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        max_width: int = MAX_WIDTH,
        max_height: int = MAX_HEIGHT,
        quality: int = QUALITY,
    ):
        self.max_upload_bytes = max_upload_bytes
        self.max_width = max_width
        self.max_height = max_height
        self.quality = quality

    def validate(self, image_data: Optional[bytes], content_type: Optional[str], declared_size: Optional[int] = None):
        """
        Check the payload without decoding it.

        Raises:
            ImageValidationError: Missing payload, non-image content type,
                or a size above the limit
        """
        if not image_data:
            raise ImageValidationError("Image is required")

        if not content_type or not content_type.lower().startswith("image/"):
            raise ImageValidationError(
                f"Invalid content type '{content_type or 'unknown'}': file must be an image"
            )

        self.check_size(max(declared_size or 0, len(image_data)))

    def check_size(self, size: int):
        """Reject a payload whose (declared or actual) byte size is above the limit."""
        if size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise ImageValidationError(
                f"Invalid image: {size} bytes exceeds the {limit_mb:g} MB limit"
            )

    def preprocess(self, image_data: bytes) -> ProcessedImage:
        """
        Downscale to fit within max_width x max_height and re-encode as JPEG.

        Aspect ratio is preserved and smaller images are never enlarged.

        Raises:
            ImageValidationError: If the bytes are not a decodable image
        """
        try:
            image = Image.open(io.BytesIO(image_data))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise ImageValidationError(f"Invalid image data: {e}") from e

        original_size = image.size
        image = ImageOps.exif_transpose(image)

        # thumbnail() only ever shrinks
        if image.width > self.max_width or image.height > self.max_height:
            image.thumbnail((self.max_width, self.max_height), Image.Resampling.LANCZOS)

        image = self._flatten(image)

        buffer = io.BytesIO()
        image.save(buffer, format=self.OUTPUT_FORMAT, quality=self.quality)

        logger.info(f"Preprocessed image {original_size} -> {image.size}")
        return ProcessedImage(
            data=buffer.getvalue(),
            content_type=self.OUTPUT_CONTENT_TYPE,
            size=image.size,
            original_size=original_size,
        )

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        """JPEG has no alpha: composite transparent images onto white."""
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            image = image.convert("RGBA")
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.split()[3])
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image
