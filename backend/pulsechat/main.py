from __future__ import annotations

import json
import os
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .auth import (
    get_current_user_id,
    hash_password,
    issue_token,
    jwt_verify,
    now_ts,
    user_id_from_authorization,
    verify_google_token,
    verify_password,
)
from .errors import (
    AuthError,
    ChatError,
    DuplicateEmail,
    FileNotFound,
    InvalidCredentials,
    UserNotFound,
    ValidationError,
)
from .fanout import Connection, Hub, send_message
from .gate import ConversationGate
from .models import User
from .storage import MemoryStorage, open_storage
from .uploads import find_missing, local_path, save_upload

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger("pulsechat.api")


# =========================
# Services
# =========================
class AppState:
    """Storage, hub and gate shared by every handler; storage is chosen once at startup."""

    def __init__(self):
        self.hub = Hub()
        self.use(MemoryStorage())

    def use(self, storage) -> None:
        self.storage = storage
        self.gate = ConversationGate(storage, self.hub)


state = AppState()


def require_user(user_id: str) -> User:
    user = state.storage.find_user_by_id(user_id)
    if user is None:
        raise UserNotFound()
    return user


def auth_payload(user: User) -> dict:
    return {"token": issue_token(user.id, user.email), "user": user.public()}


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    state.use(open_storage(config.DATABASE_URL))
    LOGGER.info("Storage: %s", state.storage.backend_name)
    yield


app = FastAPI(title="pulsechat", lifespan=_lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(_request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"message": message})


app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    user_id = user_id_from_authorization(request.headers.get("authorization"))
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                    "user_id": user_id,
                },
                ensure_ascii=False,
            )
        )


@app.get("/api/health")
def healthcheck():
    return {"ok": True, "ts": now_ts(), "storage": state.storage.backend_name, **config.get_build_meta()}


# =========================
# Schemas
# =========================
class ApiIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterIn(ApiIn):
    username: str = ""
    email: str = ""
    password: str = ""


class LoginIn(ApiIn):
    email: str = ""
    password: str = ""


class GoogleAuthIn(ApiIn):
    token: str = ""


class MessageCreateIn(ApiIn):
    content: str = ""
    type: str = "text"
    receiver_id: str = ""
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_url: Optional[str] = None


class FriendRequestIn(ApiIn):
    receiver_id: str = ""


class FriendRequestActionIn(ApiIn):
    action: str = ""


# =========================
# Auth API
# =========================
@app.post("/api/auth/register")
def register(data: RegisterIn):
    username = data.username.strip()
    email = data.email.strip().lower()
    password = data.password

    if not username or not email or not password:
        raise ValidationError("Username, email and password are required")
    if len(password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if state.storage.find_user_by_email(email) is not None:
        raise DuplicateEmail()

    user = state.storage.save_user(
        User(username=username, email=email, password_hash=hash_password(password), status="online")
    )
    LOGGER.info("registered user %s", user.id)
    return auth_payload(user)


@app.post("/api/auth/login")
def login(data: LoginIn):
    email = data.email.strip().lower()
    user = state.storage.find_user_by_email(email)

    if not user or not verify_password(data.password, user.password_hash):
        raise InvalidCredentials()

    user = state.storage.update_user(user.id, status="online")
    return auth_payload(user)


@app.post("/api/auth/google")
def google_login(data: GoogleAuthIn):
    claims = verify_google_token(data.token)
    email = claims["email"].strip().lower()

    user = state.storage.find_user_by_email(email)
    if user is None:
        user = state.storage.save_user(
            User(
                username=claims.get("name") or email.split("@", 1)[0],
                email=email,
                avatar=claims.get("picture"),
                google_id=claims["sub"],
                status="online",
            )
        )
        LOGGER.info("registered user %s via google", user.id)
    else:
        user = state.storage.update_user(user.id, status="online", google_id=user.google_id or claims["sub"])
    return auth_payload(user)


@app.post("/api/auth/logout")
def logout(user_id: str = Depends(get_current_user_id)):
    state.storage.update_user(user_id, status="offline")
    return {"ok": True}


@app.get("/api/auth/me")
def me(user_id: str = Depends(get_current_user_id)):
    return require_user(user_id).public()


# =========================
# Users API
# =========================
@app.get("/api/users")
def list_users(user_id: str = Depends(get_current_user_id)):
    users = sorted(
        state.storage.list_users(),
        key=lambda u: (u.status != "online", u.username.lower()),
    )
    return [u.public() for u in users]


@app.get("/api/users/search")
def search_users(q: str = Query(""), user_id: str = Depends(get_current_user_id)):
    q = q.strip()
    if not q:
        return []
    found = state.storage.search_users(q, exclude_id=user_id, limit=config.USER_SEARCH_LIMIT)
    return [u.public() for u in found]


# =========================
# Messages API
# =========================
@app.get("/api/messages")
def list_messages(receiver_id: str = Query("", alias="receiverId"), user_id: str = Depends(get_current_user_id)):
    if not receiver_id:
        raise ValidationError("Receiver ID is required")
    return [m.to_json() for m in state.storage.list_messages_between(user_id, receiver_id)]


@app.post("/api/messages")
async def create_message(data: MessageCreateIn, user_id: str = Depends(get_current_user_id)):
    message = await send_message(
        state.storage,
        state.gate,
        state.hub,
        sender_id=user_id,
        receiver_id=data.receiver_id,
        content=data.content,
        type=data.type,
        file_url=data.file_url,
        file_name=data.file_name,
        file_size=data.file_size,
    )
    return message.to_json()


# =========================
# Files API
# =========================
@app.post("/api/upload")
@app.post("/api/files/upload")
async def upload_file(file: UploadFile = File(...), user_id: str = Depends(get_current_user_id)):
    require_user(user_id)
    meta = state.storage.save_file_metadata(await save_upload(file, uploaded_by=user_id))
    return {
        "message": "File uploaded successfully",
        "id": meta.id,
        "fileUrl": meta.file_url,
        "fileName": meta.original_name,
        "fileSize": meta.file_size,
        "fileType": meta.file_type,
        "isImage": meta.file_type == "image",
        "isVideo": meta.file_type == "video",
        "isAudio": meta.file_type == "audio",
    }


@app.post("/api/profile/upload")
async def upload_avatar(file: UploadFile = File(...), user_id: str = Depends(get_current_user_id)):
    require_user(user_id)
    meta = await save_upload(
        file,
        uploaded_by=user_id,
        allowed=config.ALLOWED_IMAGE_MIME,
        folder="pulsechat/avatars",
    )
    state.storage.save_file_metadata(meta)
    state.storage.update_user(user_id, avatar=meta.file_url)
    return {"message": "Profile picture uploaded successfully", "avatar": meta.file_url}


@app.get("/api/files/recover")
def recover_files(user_id: str = Depends(get_current_user_id)):
    return {"files": [f.to_json() for f in state.storage.list_files_by_uploader(user_id)]}


@app.get("/api/files/check-missing")
def check_missing_files(user_id: str = Depends(get_current_user_id)):
    missing = find_missing(state.storage.list_files_by_uploader(user_id))
    if missing:
        LOGGER.warning("user %s has %d uploads without a blob", user_id, len(missing))
    return {
        "missingFiles": [f.to_json() for f in missing],
        "totalMissing": len(missing),
        "message": f"{len(missing)} file(s) missing" if missing else "All files are present",
    }


@app.get("/uploads/{filename}")
def serve_upload(filename: str):
    path = local_path(filename)
    if not os.path.isfile(path):
        raise FileNotFound("This file may have been removed after server restart")
    return FileResponse(path)


# =========================
# Friend requests API
# =========================
def _with_user(request_json: dict, key: str, user_id: str) -> dict:
    user = state.storage.find_user_by_id(user_id)
    request_json[key] = user.snapshot().to_json() if user else None
    return request_json


@app.post("/api/friend-requests")
async def send_friend_request(data: FriendRequestIn, user_id: str = Depends(get_current_user_id)):
    if not data.receiver_id:
        raise ValidationError("Receiver ID is required")
    request = await state.gate.send_request(user_id, data.receiver_id)
    return {"message": "Friend request sent successfully", "request": request.to_json()}


@app.get("/api/friend-requests/received")
def received_friend_requests(user_id: str = Depends(get_current_user_id)):
    requests = state.storage.list_incoming_pending_requests(user_id)
    return {"requests": [_with_user(r.to_json(), "sender", r.sender_id) for r in requests]}


@app.get("/api/friend-requests/sent")
def sent_friend_requests(user_id: str = Depends(get_current_user_id)):
    requests = state.storage.list_outgoing_pending_requests(user_id)
    return {"requests": [_with_user(r.to_json(), "receiver", r.receiver_id) for r in requests]}


@app.put("/api/friend-requests/{request_id}")
async def respond_friend_request(
    request_id: str,
    data: FriendRequestActionIn,
    user_id: str = Depends(get_current_user_id),
):
    request = await state.gate.respond(request_id, user_id, data.action)
    return {"message": f"Friend request {request.status} successfully", "request": request.to_json()}


@app.delete("/api/friend-requests/{request_id}")
async def cancel_friend_request(request_id: str, user_id: str = Depends(get_current_user_id)):
    await state.gate.cancel(request_id, user_id)
    return {"message": "Friend request cancelled successfully"}


@app.get("/api/friends/{other_id}")
def are_friends(other_id: str, user_id: str = Depends(get_current_user_id)):
    return {"areFriends": state.gate.are_friends(user_id, other_id)}


@app.get("/api/conversations/{other_id}")
def conversation_status(other_id: str, user_id: str = Depends(get_current_user_id)):
    friends = state.gate.are_friends(user_id, other_id)
    history = state.storage.has_messages_between(user_id, other_id)
    return {"areFriends": friends, "hasHistory": history, "open": friends or history}


# =========================
# WebSocket: global event stream
# =========================
@app.websocket("/ws")
async def ws_events(ws: WebSocket):
    """
    Client connects with ?token=...
    Receives {"event": ..., "data": ...} frames for every broadcast:
      - message:receive
      - friend-request:{sent,received,accepted,declined,cancelled}
      - user:joined / user:left
      - typing:start / typing:stop
    Sends:
      - join {}
      - typing:start / typing:stop {receiverId}
    """
    token = (ws.query_params.get("token") or "").strip()
    if not token:
        await ws.close(code=4401)
        return

    try:
        user_id = jwt_verify(token)["id"]
        user = require_user(user_id)
    except (AuthError, UserNotFound):
        await ws.close(code=4401)
        return

    await ws.accept()
    conn = Connection(ws, user_id)
    state.hub.add(conn)
    LOGGER.info("ws connected user=%s connections=%s", user_id, state.hub.connection_count(user_id))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(frame, dict):
                continue

            event = frame.get("event")
            data = frame.get("data") or {}
            if not isinstance(data, dict):
                continue

            if event == "join":
                user = state.storage.update_user(user_id, status="online")
                await state.hub.publish("user:joined", {**user.snapshot().to_json(), "status": "online"}, exclude=conn)

            elif event in ("typing:start", "typing:stop"):
                receiver_id = str(data.get("receiverId") or "").strip()
                if not receiver_id:
                    continue
                # name as stored now, not as it was at connect time
                user = state.storage.find_user_by_id(user_id) or user
                await state.hub.publish(event, {
                    "id": user_id,
                    "username": user.username,
                    "receiverId": receiver_id,
                }, exclude=conn)
    except WebSocketDisconnect:
        pass
    finally:
        state.hub.discard(conn)
        LOGGER.info("ws disconnected user=%s", user_id)
        if not state.hub.is_online(user_id):
            state.storage.update_user(user_id, status="offline")
            await state.hub.publish("user:left", {"id": user_id, "status": "offline"})
