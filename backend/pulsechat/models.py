"""
Entity schemas for pulsechat.

Each model maps to one collection of the storage backend (``users``,
``messages``, ``friend_requests``, ``files``). Entities reference each other
by id only; the one exception is ``Message.sender``, a snapshot copied at
send time.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UserStatus = Literal["online", "offline"]
MessageType = Literal["text", "image", "video", "audio", "file", "gif"]
FriendRequestStatus = Literal["pending", "accepted", "declined"]
FileType = Literal["image", "video", "audio", "file"]


def new_id() -> str:
    return str(uuid.uuid4())


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """Stored with snake_case names, sent over the wire in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class SenderSnapshot(Document):
    id: str
    username: str
    avatar: Optional[str] = None


class User(Document):
    id: str = Field(default_factory=new_id)
    username: str = Field(..., description="Display name")
    email: str = Field(..., description="Unique, used as login")
    password_hash: Optional[str] = Field(None, description="PBKDF2 hash, absent for Google-only accounts")
    avatar: Optional[str] = Field(None, description="Public URL of profile picture")
    status: UserStatus = "offline"
    google_id: Optional[str] = Field(None, description="OAuth subject")
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    def public(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude={"password_hash"})

    def snapshot(self) -> SenderSnapshot:
        return SenderSnapshot(id=self.id, username=self.username, avatar=self.avatar)


class Message(Document):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    content: str
    type: MessageType = "text"
    sender_id: str
    receiver_id: str
    sender: SenderSnapshot
    timestamp: datetime = Field(default_factory=now_utc)
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None

    def involves(self, user_a: str, user_b: str) -> bool:
        return {self.sender_id, self.receiver_id} == {user_a, user_b}


class FriendRequest(Document):
    id: str = Field(default_factory=new_id)
    sender_id: str
    receiver_id: str
    status: FriendRequestStatus = "pending"
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    def between(self, user_a: str, user_b: str) -> bool:
        return {self.sender_id, self.receiver_id} == {user_a, user_b}


class FileMetadata(Document):
    id: str = Field(default_factory=new_id)
    filename: str = Field(..., description="Stored blob name")
    original_name: str
    file_url: str
    file_size: int
    file_type: FileType
    mime_type: str
    uploaded_by: str
    uploaded_at: datetime = Field(default_factory=now_utc)

    @property
    def is_local(self) -> bool:
        return self.file_url.startswith("/uploads/")
