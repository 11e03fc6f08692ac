"""Media host client (Cloudinary upload API via the official SDK).

Usage:
    client = MediaHostClient(cloud_name="demo", api_key="...", api_secret="...")
    async with temporary_upload_file(upload, max_bytes=10 * 1024 * 1024) as path:
        result = await client.upload(path, content_type=upload.content_type)
"""
import asyncio
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
from fastapi import UploadFile
from pydantic import ValidationError

from app.config import AppConfig

from .schemas import MediaUploadResult

logger = logging.getLogger(__name__)

# Read size when spooling uploads to disk
CHUNK_SIZE = 1024 * 1024


class MediaUploadError(Exception):
    """The media host rejected the upload or could not be reached."""


class FileTooLargeError(ValueError):
    """Upload exceeds the configured size limit."""


@asynccontextmanager
async def temporary_upload_file(
    upload: UploadFile, max_bytes: int
) -> AsyncIterator[Path]:
    """Spool an incoming upload into a named temp file.

    The file is deleted when the block exits, whether it succeeded, raised,
    or was cancelled by a timeout.

    Raises:
        FileTooLargeError: If the upload exceeds ``max_bytes``.
    """
    suffix = Path(upload.filename or "").suffix.lower()
    fd, name = tempfile.mkstemp(prefix="upload-", suffix=suffix)
    path = Path(name)
    try:
        size = 0
        with os.fdopen(fd, "wb") as fh:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise FileTooLargeError(
                        f"File size exceeds limit of {max_bytes} bytes"
                    )
                fh.write(chunk)
        yield path
    finally:
        path.unlink(missing_ok=True)
        logger.debug(f"Removed temp upload {path}")


class MediaHostClient:
    """Uploads images to Cloudinary and returns durable URLs."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str = "img-posts",
        upload_prefix: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.upload_prefix = upload_prefix
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: AppConfig) -> Optional["MediaHostClient"]:
        """Build a client, or return None if uploads are disabled or unconfigured."""
        media = config.media
        secrets = config.secrets.media
        if not media.enabled:
            return None
        if not (media.cloud_name and secrets.api_key and secrets.api_secret):
            logger.warning("Media uploads enabled but cloud_name/api credentials missing")
            return None
        return cls(
            cloud_name=media.cloud_name,
            api_key=secrets.api_key,
            api_secret=secrets.api_secret,
            folder=media.folder,
            upload_prefix=media.upload_prefix,
            timeout=media.upload_timeout_seconds,
        )

    def upload_options(self) -> Dict[str, Any]:
        """Per-call SDK options; the global ``cloudinary.config`` is never touched."""
        options: Dict[str, Any] = {
            "use_filename": True,
            "folder": self.folder,
            "resource_type": "image",
            "cloud_name": self.cloud_name,
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "timeout": self.timeout,
        }
        if self.upload_prefix:
            options["upload_prefix"] = self.upload_prefix
        return options

    def _upload(self, path: Path) -> Any:
        return cloudinary.uploader.upload(str(path), **self.upload_options())

    async def upload(
        self, path: Path, content_type: Optional[str] = None
    ) -> MediaUploadResult:
        """Upload a local file, keeping its filename as the asset name.

        The SDK call is blocking, so it runs in a worker thread.

        Raises:
            MediaUploadError: If the SDK call fails or returns an unusable result.
        """
        try:
            body = await asyncio.to_thread(self._upload, path)
        except cloudinary.exceptions.Error as e:
            logger.error(f"Media host rejected upload of {path.name}: {e}")
            raise MediaUploadError(f"Media host rejected upload: {e}") from e
        except Exception as e:
            logger.error(f"Media host unreachable: {e}")
            raise MediaUploadError(f"Media host unreachable: {e}") from e

        if not isinstance(body, dict):
            raise MediaUploadError(f"Unexpected media host response: {body!r}")
        try:
            result = MediaUploadResult(
                url=body["secure_url"],
                publicId=body["public_id"],
                format=body.get("format"),
                width=body.get("width"),
                height=body.get("height"),
                bytes=body.get("bytes"),
            )
        except (KeyError, ValidationError) as e:
            raise MediaUploadError(f"Unexpected media host response: {e}") from e
        logger.info(f"Uploaded {path.name} ({content_type or 'unknown type'}) as {result.publicId}")
        return result
