"""Pydantic schemas for media uploads."""
from typing import Optional

from pydantic import BaseModel, Field


class MediaUploadResult(BaseModel):
    """Durable reference returned by the media host.

    Attributes:
        url: HTTPS URL of the stored asset.
        publicId: Host-side identifier of the asset.
        format: File format reported by the host (e.g. "png").
        width: Pixel width, when the host reports it.
        height: Pixel height, when the host reports it.
        bytes: Stored size in bytes.
    """
    url: str = Field(..., description="Durable HTTPS URL")
    publicId: str = Field(..., description="Host-side asset ID")
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: Optional[int] = None
