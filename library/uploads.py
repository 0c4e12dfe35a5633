"""
Storage for uploaded book images.

Image attributes hold either a path written here or an external URL. Only
files inside the upload directory are ever deleted.
"""

import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from library.errors import InputValidationError

logger = structlog.get_logger(__name__)

EXTERNAL_PREFIXES = ("http://", "https://")


class ImageStore:
    """Writes uploaded images to disk and removes them again."""

    def __init__(self, upload_dir: Path, allowed_prefix: str = "image/"):
        self.upload_dir = Path(upload_dir)
        self.allowed_prefix = allowed_prefix

    @staticmethod
    def is_external(path: Optional[str]) -> bool:
        return bool(path) and path.lower().startswith(EXTERNAL_PREFIXES)

    def is_uploaded(self, path: Optional[str]) -> bool:
        """True for paths this store may delete: files inside the upload directory."""
        if not path or self.is_external(path):
            return False
        root = self.upload_dir.resolve()
        try:
            resolved = Path(path).resolve()
        except (OSError, RuntimeError):
            return False
        return resolved != root and resolved.is_relative_to(root)

    async def save(self, upload: Any) -> str:
        """
        Persist an uploaded file.

        Args:
            upload: A FastAPI UploadFile (anything with filename, content_type and async read)

        Returns:
            Path of the stored file

        Raises:
            InputValidationError: If the file is not an image
        """
        content_type = getattr(upload, "content_type", None) or ""
        if not content_type.startswith(self.allowed_prefix):
            raise InputValidationError(
                "Error uploading files",
                details={"file": "Only image files are allowed (jpeg, jpg, png)"}
            )

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        filename = Path(upload.filename or "upload").name
        target = self.upload_dir / f"{int(time.time() * 1000)}-{filename}"
        target.write_bytes(await upload.read())

        logger.debug("Stored uploaded image", path=str(target))
        return str(target)

    async def save_all(self, uploads: Dict[str, Any]) -> Dict[str, str]:
        """
        Persist several uploads keyed by image attribute.

        If one file is rejected, the ones already written are removed before
        the error propagates.
        """
        stored: Dict[str, str] = {}
        try:
            for field, upload in uploads.items():
                if upload is not None:
                    stored[field] = await self.save(upload)
        except InputValidationError:
            self.delete_all(stored.values())
            raise
        return stored

    def delete(self, path: Optional[str]) -> bool:
        """
        Delete a stored image. External URLs and missing files are skipped.

        Returns:
            True if a file was removed
        """
        if not self.is_uploaded(path):
            if path and not self.is_external(path):
                logger.warning("Refusing to delete file outside upload directory", path=path)
            return False
        try:
            Path(path).unlink()
            logger.debug("Deleted image", path=path)
            return True
        except FileNotFoundError:
            logger.warning("Image already gone", path=path)
            return False
        except OSError as e:
            logger.error("Failed to delete image", path=path, error=str(e))
            return False

    def delete_all(self, paths: Any) -> List[str]:
        return [path for path in paths if self.delete(path)]
