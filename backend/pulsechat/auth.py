from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Optional

import requests
from fastapi import Header

from . import config
from .errors import AuthError, TokenInvalid

LOGGER = logging.getLogger("pulsechat.auth")


def now_ts() -> int:
    return int(time.time())


# =========================
# Password hashing (PBKDF2)
# =========================
def hash_password(password: str, salt: Optional[str] = None) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 200_000)
    return f"pbkdf2_sha256$200000${salt}${dk.hex()}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        _, _, salt, _ = stored.split("$", 3)
    except ValueError:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


# =========================
# Minimal JWT HS256
# =========================
def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64urldecode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def jwt_sign(payload: dict) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = b64url(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = b64url(json.dumps(payload, separators=(",", ":")).encode())
    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = hmac.new(config.JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{b64url(sig)}"


def jwt_verify(token: str) -> dict:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".", 2)
    except ValueError:
        raise TokenInvalid("Invalid token")

    msg = f"{header_b64}.{payload_b64}".encode("ascii")
    expected = hmac.new(config.JWT_SECRET.encode(), msg, hashlib.sha256).digest()
    if not hmac.compare_digest(b64url(expected), sig_b64):
        raise TokenInvalid("Bad signature")

    try:
        payload = json.loads(b64urldecode(payload_b64))
    except ValueError:
        raise TokenInvalid("Invalid token")
    if int(payload.get("exp", 0)) < now_ts():
        raise TokenInvalid("Token expired")
    if not payload.get("id"):
        raise TokenInvalid("Invalid token")
    return payload


def issue_token(user_id: str, email: str) -> str:
    now = now_ts()
    return jwt_sign({"id": user_id, "email": email, "iat": now, "exp": now + config.JWT_TTL_SECONDS})


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not value:
        return None
    return value


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthError()
    return jwt_verify(token)["id"]


def user_id_from_authorization(authorization: Optional[str]) -> Optional[str]:
    """Best-effort lookup used for request logging; never raises."""
    token = _extract_bearer(authorization)
    if not token:
        return None
    try:
        return jwt_verify(token)["id"]
    except AuthError:
        return None


# =========================
# Google identity
# =========================
def verify_google_token(id_token: str) -> dict:
    """
    Verify a Google ID token through the tokeninfo endpoint.
    Returns the claims (``email``, ``name``, ``picture``, ``sub``).
    """
    if not config.GOOGLE_CLIENT_ID:
        raise AuthError("Google sign-in is not configured")
    if not id_token:
        raise AuthError("Google token required")

    try:
        response = requests.get(
            config.GOOGLE_TOKENINFO_URL,
            params={"id_token": id_token},
            timeout=8,
        )
    except requests.RequestException as exc:
        LOGGER.warning("Google tokeninfo request failed: %s", exc)
        raise AuthError("Authentication failed")

    if response.status_code != 200:
        raise AuthError("Authentication failed")

    claims = response.json()
    if claims.get("aud") != config.GOOGLE_CLIENT_ID:
        raise AuthError("Authentication failed")
    if not claims.get("email") or not claims.get("sub"):
        raise AuthError("Authentication failed")
    return claims
