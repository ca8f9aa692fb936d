from __future__ import annotations

import logging
import os
import time
import uuid
from typing import List, Optional, Set

import cloudinary
import cloudinary.uploader
from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from . import config
from .errors import UploadError, UploadTooLarge
from .models import FileMetadata

LOGGER = logging.getLogger("pulsechat.uploads")

if config.CLOUDINARY_ENABLED:
    cloudinary.config(
        cloud_name=config.CLOUDINARY_CLOUD_NAME,
        api_key=config.CLOUDINARY_API_KEY,
        api_secret=config.CLOUDINARY_API_SECRET,
        secure=True,
    )


def file_type_from_mime(mime: str) -> str:
    mime = (mime or "").lower().strip()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    return "file"


def cloudinary_resource_type(kind: str) -> str:
    # Cloudinary treats audio as "video" resource in most cases.
    if kind == "image":
        return "image"
    if kind in ("video", "audio"):
        return "video"
    return "raw"


def stored_name(original_name: str) -> str:
    ext = os.path.splitext(original_name or "")[1].lower()
    return f"{int(time.time() * 1000)}-{uuid.uuid4()}{ext}"


def local_path(filename: str) -> str:
    # basename keeps lookups inside the uploads directory
    return os.path.join(config.UPLOADS_DIR, os.path.basename(filename))


async def save_upload(
    file: UploadFile,
    uploaded_by: str,
    allowed: Optional[Set[str]] = None,
    folder: str = "pulsechat/uploads",
) -> FileMetadata:
    """
    Stream ``file`` into the uploads directory and describe it.

    The mime type is checked against ``allowed`` (default: the upload
    allow-list) before anything is written; the size limit is enforced while
    streaming and a partial file is removed.
    """
    allowed = config.ALLOWED_UPLOAD_MIME if allowed is None else allowed
    content_type = (file.content_type or "").lower().strip()
    if content_type not in allowed:
        raise UploadError(f"File type not allowed: {content_type or 'unknown'}")

    original_name = (file.filename or "").strip()[:255] or "upload"
    filename = stored_name(original_name)
    path = local_path(filename)

    size = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = await file.read(config.UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > config.MAX_UPLOAD_BYTES:
                    raise UploadTooLarge(f"File too large (max {config.MAX_UPLOAD_MB}MB)")
                out.write(chunk)
    except BaseException:
        # no partial blobs, whatever stopped the stream
        if os.path.exists(path):
            os.remove(path)
        raise

    kind = file_type_from_mime(content_type)
    file_url = f"/uploads/{filename}"

    if config.CLOUDINARY_ENABLED:
        try:
            res = await run_in_threadpool(
                cloudinary.uploader.upload,
                path,
                folder=folder,
                resource_type=cloudinary_resource_type(kind),
                use_filename=True,
                unique_filename=True,
            )
            file_url = res.get("secure_url") or res.get("url") or file_url
        except Exception as e:
            # the local copy still serves the file
            LOGGER.warning("Cloudinary upload failed, keeping local copy %s: %s", filename, e)

    LOGGER.info("stored upload %s (%s, %d bytes) for %s", filename, kind, size, uploaded_by)
    return FileMetadata(
        filename=filename,
        original_name=original_name,
        file_url=file_url,
        file_size=size,
        file_type=kind,
        mime_type=content_type,
        uploaded_by=uploaded_by,
    )


def blob_exists(meta: FileMetadata) -> bool:
    if not meta.is_local:
        return True
    return os.path.isfile(local_path(meta.filename))


def find_missing(files: List[FileMetadata]) -> List[FileMetadata]:
    return [f for f in files if not blob_exists(f)]
