"""
Cover image uploads

Image inputs arrive as URLs, data URIs, server paths or multipart uploads.
They are resolved once into an ImageSource and only then handed to
Cloudinary; remote URLs are stored as-is.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from fastapi import UploadFile

from errors import ServerError, ValidationError

logger = logging.getLogger(__name__)

CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "Fully Booked")
MAX_IMAGES = 5


class ImageKind(str, Enum):
    REMOTE_URL = "remote_url"
    DATA_URI = "data_uri"
    LOCAL_PATH = "local_path"
    UPLOAD_HANDLE = "upload_handle"


@dataclass(frozen=True)
class ImageSource:
    kind: ImageKind
    value: Any
    filename: Optional[str] = None

    @classmethod
    def from_string(cls, value: str) -> "ImageSource":
        value = value.strip()
        if not value:
            raise ValidationError("Empty image reference")
        if value.startswith(("http://", "https://")):
            return cls(ImageKind.REMOTE_URL, value)
        if value.startswith("data:image"):
            return cls(ImageKind.DATA_URI, value)
        if value.startswith(("file://", "content://", "/data/")):
            raise ValidationError("Cannot access mobile file paths directly. Please send the image as base64.")
        return cls(ImageKind.LOCAL_PATH, value)

    @classmethod
    def from_upload(cls, upload: UploadFile) -> "ImageSource":
        return cls(ImageKind.UPLOAD_HANDLE, upload.file, upload.filename)


def cloudinary_configured() -> bool:
    return bool(os.getenv("CLOUDINARY_URL") or os.getenv("CLOUDINARY_CLOUD_NAME"))


def upload_image(source: ImageSource, folder: str = CLOUDINARY_FOLDER) -> str:
    """Return a hosted URL for `source`, uploading to Cloudinary when needed."""
    if source.kind is ImageKind.REMOTE_URL:
        return source.value
    if not cloudinary_configured():
        raise ServerError("Image host not configured")

    import cloudinary
    import cloudinary.uploader

    if os.getenv("CLOUDINARY_CLOUD_NAME"):
        cloudinary.config(
            cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
            api_key=os.getenv("CLOUDINARY_API_KEY"),
            api_secret=os.getenv("CLOUDINARY_API_SECRET"),
            secure=True,
        )
    options = {"folder": folder, "resource_type": "auto", "use_filename": True, "unique_filename": True}
    if source.filename:
        options["filename"] = source.filename
    try:
        result = cloudinary.uploader.upload(source.value, **options)
    except Exception as e:
        logger.error("Cloudinary upload of %s failed: %s", source.kind.value, e)
        raise ServerError("Image upload failed")
    logger.info("Uploaded %s image to %s", source.kind.value, result.get("secure_url"))
    return result["secure_url"]


def resolve_images(urls: Optional[List[str]] = None, files: Optional[List[UploadFile]] = None) -> List[str]:
    """Uploaded files win over URL strings, as the mobile client sends both."""
    sources = [ImageSource.from_upload(f) for f in files or [] if f is not None and f.filename]
    if not sources:
        sources = [ImageSource.from_string(u) for u in urls or [] if u and u.strip()]
    if len(sources) > MAX_IMAGES:
        raise ValidationError(f"At most {MAX_IMAGES} images are allowed")
    return [upload_image(s) for s in sources]
