import io
import logging
import os
from uuid import uuid4

from PIL import Image

from config import MAX_IMAGE_BYTES, STORAGE_DIR, UPLOAD_URL_PREFIX
from lifecycle import InternalError, ValidationError

logger = logging.getLogger(__name__)

EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "GIF": "gif", "WEBP": "webp", "BMP": "bmp"}


class ImageStore:
    """Local disk image storage. Uploads become `<url_prefix>/<name>` references."""

    def __init__(self, storage_dir: str = STORAGE_DIR, url_prefix: str = UPLOAD_URL_PREFIX, max_bytes: int = MAX_IMAGE_BYTES):
        self.storage_dir = storage_dir
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        os.makedirs(self.storage_dir, exist_ok=True)

    def _image_format(self, filename: str, content: bytes) -> str:
        if not content:
            raise ValidationError(f"Image '{filename}' is empty")
        if len(content) > self.max_bytes:
            raise ValidationError(f"Image '{filename}' is larger than {self.max_bytes} bytes")
        try:
            img = Image.open(io.BytesIO(content))
            fmt = img.format
            img.verify()
        except Exception:
            raise ValidationError(f"File '{filename}' is not a valid image")
        if fmt not in EXTENSIONS:
            raise ValidationError(f"Unsupported image format: {fmt}")
        return fmt

    def save(self, filename: str, content: bytes) -> str:
        fmt = self._image_format(filename, content)
        name = f"{uuid4().hex}.{EXTENSIONS[fmt]}"
        path = os.path.join(self.storage_dir, name)
        try:
            with open(path, "wb") as f:
                f.write(content)
        except OSError as e:
            logger.error("image_write_failed path=%s err=%s", path, e)
            raise InternalError("Failed to store image")
        logger.info("image_saved name=%s bytes=%s", name, len(content))
        return f"{self.url_prefix}/{name}"

    def delete(self, ref: str) -> None:
        """Remove a stored image by its reference. Missing files are ignored."""
        path = os.path.join(self.storage_dir, os.path.basename(ref))
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        logger.info("image_deleted name=%s", os.path.basename(ref))
