from __future__ import annotations

import os
import secrets
import logging
from typing import List, Optional


# =========================
# Paths
# backend/pulsechat/config.py
# backend/uploads/
# =========================
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))     # .../backend/pulsechat
BACKEND_DIR = os.path.dirname(PACKAGE_DIR)                   # .../backend

LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()

LOGGER = logging.getLogger("pulsechat.config")


# =========================
# Auth
# =========================
JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    JWT_SECRET = secrets.token_urlsafe(48)
    LOGGER.warning(
        "JWT_SECRET env is missing. Generated an ephemeral secret for this process; "
        "tokens will be invalidated after restart. Set JWT_SECRET in environment for stable auth."
    )
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", str(60 * 60 * 24 * 30)))  # 30 days

GOOGLE_CLIENT_ID = (os.environ.get("GOOGLE_CLIENT_ID") or "").strip()
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"


# =========================
# Storage
# =========================
DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()

# Normalize for psycopg
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

# Page size and retention are independent limits.
MESSAGE_PAGE_SIZE = int(os.environ.get("MESSAGE_PAGE_SIZE", "100"))
MEMORY_MESSAGE_RETENTION = int(os.environ.get("MEMORY_MESSAGE_RETENTION", "1000"))
USER_SEARCH_LIMIT = int(os.environ.get("USER_SEARCH_LIMIT", "10"))


# =========================
# Uploads
# =========================
UPLOADS_DIR = (os.environ.get("UPLOADS_DIR") or "").strip() or os.path.join(BACKEND_DIR, "uploads")
os.makedirs(UPLOADS_DIR, exist_ok=True)

MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "500"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
UPLOAD_CHUNK_BYTES = 1024 * 1024

ALLOWED_IMAGE_MIME = {"image/jpeg", "image/png", "image/gif", "image/webp", "image/avif"}
ALLOWED_VIDEO_MIME = {"video/mp4", "video/webm", "video/ogg", "video/avi", "video/mov"}
ALLOWED_AUDIO_MIME = {"audio/mpeg", "audio/wav", "audio/ogg", "audio/mp3", "audio/aac"}
ALLOWED_DOCUMENT_MIME = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}
ALLOWED_UPLOAD_MIME = ALLOWED_IMAGE_MIME | ALLOWED_VIDEO_MIME | ALLOWED_AUDIO_MIME | ALLOWED_DOCUMENT_MIME

CLOUDINARY_CLOUD_NAME = (os.environ.get("CLOUDINARY_CLOUD_NAME") or "").strip()
CLOUDINARY_API_KEY = (os.environ.get("CLOUDINARY_API_KEY") or "").strip()
CLOUDINARY_API_SECRET = (os.environ.get("CLOUDINARY_API_SECRET") or "").strip()
CLOUDINARY_ENABLED = bool(CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET)


# =========================
# Realtime
# =========================
TYPING_TIMEOUT_SECONDS = float(os.environ.get("TYPING_TIMEOUT_SECONDS", "3"))


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["*"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["*"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))


def get_build_meta() -> dict:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (
        os.environ.get("APP_COMMIT")
        or os.environ.get("COMMIT_SHA")
        or os.environ.get("RENDER_GIT_COMMIT")
        or "unknown"
    ).strip() or "unknown"
    return {"version": version, "commit": commit}
