"""FastAPI router for image uploads."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status

from app.auth.dependencies import get_current_user

from .schemas import MediaUploadResult
from .service import FileTooLargeError, MediaUploadError, temporary_upload_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/uploads", tags=["uploads"])


@router.post(
    "/images",
    response_model=MediaUploadResult,
    status_code=status.HTTP_201_CREATED,
)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user),
) -> MediaUploadResult:
    """Upload an image to the media host.

    The returned URL can be sent as a message payload's ``mediaUrl``.

    Raises:
        HTTPException 503: If media uploads are disabled
        HTTPException 415: If the file is not an image
        HTTPException 413: If the file exceeds the size limit
        HTTPException 502: If the media host fails
    """
    client = request.app.state.media
    if client is None:
        raise HTTPException(status_code=503, detail="Media uploads are disabled")

    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=415, detail="Only image uploads are supported")

    max_bytes = request.app.state.config.media.max_file_size_mb * 1024 * 1024
    try:
        async with temporary_upload_file(file, max_bytes=max_bytes) as path:
            result = await client.upload(path, content_type=content_type)
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except MediaUploadError as e:
        raise HTTPException(status_code=502, detail=str(e))

    logger.info(f"Image {file.filename} uploaded by {user_id}: {result.url}")
    return result
