"""
Storage abstraction for users, messages, friend requests and file metadata.

``Storage`` is the one interface the rest of the app talks to. Concrete
backends: ``MemoryStorage`` (process-local maps) and ``PostgresStorage``
(psycopg). ``open_storage`` picks one at startup; when a database is
configured it is wrapped in ``FailoverStorage`` so that the first
connection failure moves the process onto memory for good.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import psycopg
from psycopg.rows import dict_row

from . import config
from .errors import DuplicateEmail, MessageValidationFailed, StorageError, UserNotFound
from .models import FileMetadata, FriendRequest, Message, SenderSnapshot, User, now_utc

LOGGER = logging.getLogger("pulsechat.storage")


def username_order(user: User):
    # same order as the SQL search: ORDER BY lower(username), username
    return (user.username.lower(), user.username)


class Storage(ABC):
    backend_name = "abstract"

    # ---- users
    @abstractmethod
    def find_user_by_id(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    def save_user(self, user: User) -> User:
        """Insert or replace; raises ``DuplicateEmail`` if another user owns the email."""

    @abstractmethod
    def list_users(self) -> List[User]:
        pass

    @abstractmethod
    def search_users(self, query: str, exclude_id: str, limit: int) -> List[User]:
        pass

    # ---- messages
    @abstractmethod
    def _insert_message(self, message: Message) -> Message:
        pass

    @abstractmethod
    def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        """Most recent page of the conversation, oldest first."""

    @abstractmethod
    def has_messages_between(self, user_a: str, user_b: str) -> bool:
        pass

    # ---- friend requests
    @abstractmethod
    def save_friend_request(self, request: FriendRequest) -> FriendRequest:
        pass

    @abstractmethod
    def find_friend_request(self, user_a: str, user_b: str) -> Optional[FriendRequest]:
        """Latest request for the unordered pair, in either direction."""

    @abstractmethod
    def find_friend_request_by_id(self, request_id: str) -> Optional[FriendRequest]:
        pass

    @abstractmethod
    def delete_friend_request(self, request_id: str) -> bool:
        pass

    @abstractmethod
    def list_incoming_pending_requests(self, user_id: str) -> List[FriendRequest]:
        pass

    @abstractmethod
    def list_outgoing_pending_requests(self, user_id: str) -> List[FriendRequest]:
        pass

    # ---- files
    @abstractmethod
    def save_file_metadata(self, meta: FileMetadata) -> FileMetadata:
        pass

    @abstractmethod
    def find_file_metadata(self, file_id: str) -> Optional[FileMetadata]:
        pass

    @abstractmethod
    def list_files_by_uploader(self, user_id: str) -> List[FileMetadata]:
        """Newest first."""

    # ---- shared behaviour
    def save_message(self, message: Message) -> Message:
        if not message.sender_id or not message.receiver_id:
            raise MessageValidationFailed("Sender and receiver are required")
        if not (message.content or "").strip():
            raise MessageValidationFailed()
        if self.find_user_by_id(message.sender_id) is None:
            raise UserNotFound("Sender not found")
        if self.find_user_by_id(message.receiver_id) is None:
            raise UserNotFound("Receiver not found")
        return self._insert_message(message)

    def update_user(self, user_id: str, **fields: Any) -> User:
        user = self.find_user_by_id(user_id)
        if user is None:
            raise UserNotFound()
        fields["updated_at"] = now_utc()
        return self.save_user(user.model_copy(update=fields))


# =========================
# In-memory backend
# =========================
class MemoryStorage(Storage):
    backend_name = "memory"

    def __init__(self, message_retention: int = config.MEMORY_MESSAGE_RETENTION,
                 page_size: int = config.MESSAGE_PAGE_SIZE):
        self.page_size = page_size
        # sync routes run in the threadpool while async ones run on the loop
        self.lock = threading.RLock()
        self.users: Dict[str, User] = {}
        # deque drops the oldest message once retention is reached
        self.messages: Deque[Message] = deque(maxlen=message_retention)
        self.friend_requests: Dict[str, FriendRequest] = {}
        self.files: Dict[str, FileMetadata] = {}

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self.lock:
            return self.users.get(user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self.lock:
            for user in self.users.values():
                if user.email == email:
                    return user
            return None

    def save_user(self, user: User) -> User:
        with self.lock:
            owner = self.find_user_by_email(user.email)
            if owner is not None and owner.id != user.id:
                raise DuplicateEmail()
            self.users[user.id] = user
            return user

    def update_user(self, user_id: str, **fields: Any) -> User:
        with self.lock:
            return super().update_user(user_id, **fields)

    def list_users(self) -> List[User]:
        with self.lock:
            return list(self.users.values())

    def search_users(self, query: str, exclude_id: str, limit: int) -> List[User]:
        q = query.lower()
        with self.lock:
            found = [
                u for u in self.users.values()
                if u.id != exclude_id and (q in u.username.lower() or q in u.email.lower())
            ]
        found.sort(key=username_order)
        return found[:limit]

    def _insert_message(self, message: Message) -> Message:
        with self.lock:
            self.messages.append(message)
        return message

    def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        with self.lock:
            rows = [m for m in self.messages if m.involves(user_a, user_b)]
        rows.sort(key=lambda m: m.timestamp)
        return rows[-self.page_size:]

    def has_messages_between(self, user_a: str, user_b: str) -> bool:
        with self.lock:
            return any(m.involves(user_a, user_b) for m in self.messages)

    def save_friend_request(self, request: FriendRequest) -> FriendRequest:
        with self.lock:
            self.friend_requests[request.id] = request
        return request

    def find_friend_request(self, user_a: str, user_b: str) -> Optional[FriendRequest]:
        latest = None
        with self.lock:
            for req in self.friend_requests.values():
                if req.between(user_a, user_b) and (latest is None or req.created_at >= latest.created_at):
                    latest = req
        return latest

    def find_friend_request_by_id(self, request_id: str) -> Optional[FriendRequest]:
        with self.lock:
            return self.friend_requests.get(request_id)

    def delete_friend_request(self, request_id: str) -> bool:
        with self.lock:
            return self.friend_requests.pop(request_id, None) is not None

    def list_incoming_pending_requests(self, user_id: str) -> List[FriendRequest]:
        with self.lock:
            return [r for r in self.friend_requests.values() if r.receiver_id == user_id and r.status == "pending"]

    def list_outgoing_pending_requests(self, user_id: str) -> List[FriendRequest]:
        with self.lock:
            return [r for r in self.friend_requests.values() if r.sender_id == user_id and r.status == "pending"]

    def save_file_metadata(self, meta: FileMetadata) -> FileMetadata:
        with self.lock:
            self.files[meta.id] = meta
        return meta

    def find_file_metadata(self, file_id: str) -> Optional[FileMetadata]:
        with self.lock:
            return self.files.get(file_id)

    def list_files_by_uploader(self, user_id: str) -> List[FileMetadata]:
        with self.lock:
            files = [f for f in self.files.values() if f.uploaded_by == user_id]
        return sorted(files, key=lambda f: f.uploaded_at, reverse=True)


# =========================
# PostgreSQL backend
# =========================
def _message_from_row(row: dict) -> Message:
    return Message(
        id=row["id"],
        content=row["content"],
        type=row["type"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        sender=SenderSnapshot(
            id=row["sender_id"],
            username=row["sender_username"],
            avatar=row.get("sender_avatar"),
        ),
        timestamp=row["timestamp"],
        file_url=row.get("file_url"),
        file_name=row.get("file_name"),
        file_size=row.get("file_size"),
    )


class PostgresStorage(Storage):
    backend_name = "postgres"

    def __init__(self, database_url: str, page_size: int = config.MESSAGE_PAGE_SIZE):
        self.database_url = database_url
        self.page_size = page_size

    def db(self):
        # new connection per action (simple + safe)
        return psycopg.connect(self.database_url, row_factory=dict_row)

    def init_db(self) -> None:
        with self.db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        username TEXT NOT NULL,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT,
                        avatar TEXT,
                        status TEXT NOT NULL DEFAULT 'offline',
                        google_id TEXT,
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL
                    );
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        seq BIGSERIAL,
                        id TEXT PRIMARY KEY,
                        content TEXT NOT NULL,
                        type TEXT NOT NULL DEFAULT 'text',
                        sender_id TEXT NOT NULL,
                        receiver_id TEXT NOT NULL,
                        sender_username TEXT NOT NULL,  -- snapshot at send time
                        sender_avatar TEXT,
                        timestamp TIMESTAMPTZ NOT NULL,
                        file_url TEXT,
                        file_name TEXT,
                        file_size BIGINT
                    );
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS friend_requests (
                        seq BIGSERIAL,
                        id TEXT PRIMARY KEY,
                        sender_id TEXT NOT NULL,
                        receiver_id TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL
                    );
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS files (
                        id TEXT PRIMARY KEY,
                        filename TEXT NOT NULL,
                        original_name TEXT NOT NULL,
                        file_url TEXT NOT NULL,
                        file_size BIGINT NOT NULL,
                        file_type TEXT NOT NULL,
                        mime_type TEXT NOT NULL,
                        uploaded_by TEXT NOT NULL,
                        uploaded_at TIMESTAMPTZ NOT NULL
                    );
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_pair_ts ON messages(sender_id, receiver_id, timestamp);"
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_friend_requests_pair ON friend_requests(sender_id, receiver_id);"
                )
                cur.execute("CREATE INDEX IF NOT EXISTS idx_files_uploader ON files(uploaded_by, uploaded_at);")
            conn.commit()

    def _fetch_one(self, query: str, params: tuple) -> Optional[dict]:
        with self.db() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()

    def _fetch_all(self, query: str, params: tuple = ()) -> List[dict]:
        with self.db() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()

    def _execute(self, query: str, params: tuple) -> int:
        with self.db() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                count = cur.rowcount
            conn.commit()
        return count

    # ---- users
    def find_user_by_id(self, user_id: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM users WHERE id=%s", (user_id,))
        return User(**row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one("SELECT * FROM users WHERE email=%s", (email,))
        return User(**row) if row else None

    def save_user(self, user: User) -> User:
        try:
            self._execute(
                """
                INSERT INTO users(id, username, email, password_hash, avatar, status, google_id, created_at, updated_at)
                VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s)
                ON CONFLICT (id) DO UPDATE SET
                    username=EXCLUDED.username, email=EXCLUDED.email, password_hash=EXCLUDED.password_hash,
                    avatar=EXCLUDED.avatar, status=EXCLUDED.status, google_id=EXCLUDED.google_id,
                    updated_at=EXCLUDED.updated_at
                """,
                (
                    user.id, user.username, user.email, user.password_hash, user.avatar,
                    user.status, user.google_id, user.created_at, user.updated_at,
                ),
            )
        except psycopg.errors.UniqueViolation:
            raise DuplicateEmail()
        return user

    def list_users(self) -> List[User]:
        return [User(**row) for row in self._fetch_all("SELECT * FROM users")]

    def search_users(self, query: str, exclude_id: str, limit: int) -> List[User]:
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        rows = self._fetch_all(
            """
            SELECT * FROM users
            WHERE id <> %s AND (username ILIKE %s OR email ILIKE %s)
            ORDER BY lower(username), username
            LIMIT %s
            """,
            (exclude_id, pattern, pattern, limit),
        )
        return [User(**row) for row in rows]

    # ---- messages
    def _insert_message(self, message: Message) -> Message:
        self._execute(
            """
            INSERT INTO messages(id, content, type, sender_id, receiver_id, sender_username, sender_avatar,
                                 timestamp, file_url, file_name, file_size)
            VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
            """,
            (
                message.id, message.content, message.type, message.sender_id, message.receiver_id,
                message.sender.username, message.sender.avatar, message.timestamp,
                message.file_url, message.file_name, message.file_size,
            ),
        )
        return message

    def list_messages_between(self, user_a: str, user_b: str) -> List[Message]:
        rows = self._fetch_all(
            """
            SELECT * FROM (
                SELECT * FROM messages
                WHERE (sender_id=%s AND receiver_id=%s) OR (sender_id=%s AND receiver_id=%s)
                ORDER BY timestamp DESC, seq DESC
                LIMIT %s
            ) recent
            ORDER BY timestamp ASC, seq ASC
            """,
            (user_a, user_b, user_b, user_a, self.page_size),
        )
        return [_message_from_row(row) for row in rows]

    def has_messages_between(self, user_a: str, user_b: str) -> bool:
        row = self._fetch_one(
            """
            SELECT 1 AS found FROM messages
            WHERE (sender_id=%s AND receiver_id=%s) OR (sender_id=%s AND receiver_id=%s)
            LIMIT 1
            """,
            (user_a, user_b, user_b, user_a),
        )
        return row is not None

    # ---- friend requests
    def save_friend_request(self, request: FriendRequest) -> FriendRequest:
        self._execute(
            """
            INSERT INTO friend_requests(id, sender_id, receiver_id, status, created_at, updated_at)
            VALUES (%s,%s,%s,%s,%s,%s)
            ON CONFLICT (id) DO UPDATE SET status=EXCLUDED.status, updated_at=EXCLUDED.updated_at
            """,
            (request.id, request.sender_id, request.receiver_id, request.status,
             request.created_at, request.updated_at),
        )
        return request

    def find_friend_request(self, user_a: str, user_b: str) -> Optional[FriendRequest]:
        row = self._fetch_one(
            """
            SELECT * FROM friend_requests
            WHERE (sender_id=%s AND receiver_id=%s) OR (sender_id=%s AND receiver_id=%s)
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            (user_a, user_b, user_b, user_a),
        )
        return FriendRequest(**row) if row else None

    def find_friend_request_by_id(self, request_id: str) -> Optional[FriendRequest]:
        row = self._fetch_one("SELECT * FROM friend_requests WHERE id=%s", (request_id,))
        return FriendRequest(**row) if row else None

    def delete_friend_request(self, request_id: str) -> bool:
        return self._execute("DELETE FROM friend_requests WHERE id=%s", (request_id,)) > 0

    def list_incoming_pending_requests(self, user_id: str) -> List[FriendRequest]:
        rows = self._fetch_all(
            "SELECT * FROM friend_requests WHERE receiver_id=%s AND status='pending' ORDER BY created_at",
            (user_id,),
        )
        return [FriendRequest(**row) for row in rows]

    def list_outgoing_pending_requests(self, user_id: str) -> List[FriendRequest]:
        rows = self._fetch_all(
            "SELECT * FROM friend_requests WHERE sender_id=%s AND status='pending' ORDER BY created_at",
            (user_id,),
        )
        return [FriendRequest(**row) for row in rows]

    # ---- files
    def save_file_metadata(self, meta: FileMetadata) -> FileMetadata:
        self._execute(
            """
            INSERT INTO files(id, filename, original_name, file_url, file_size, file_type, mime_type,
                              uploaded_by, uploaded_at)
            VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s)
            ON CONFLICT (id) DO NOTHING
            """,
            (meta.id, meta.filename, meta.original_name, meta.file_url, meta.file_size,
             meta.file_type, meta.mime_type, meta.uploaded_by, meta.uploaded_at),
        )
        return meta

    def find_file_metadata(self, file_id: str) -> Optional[FileMetadata]:
        row = self._fetch_one("SELECT * FROM files WHERE id=%s", (file_id,))
        return FileMetadata(**row) if row else None

    def list_files_by_uploader(self, user_id: str) -> List[FileMetadata]:
        rows = self._fetch_all(
            "SELECT * FROM files WHERE uploaded_by=%s ORDER BY uploaded_at DESC",
            (user_id,),
        )
        return [FileMetadata(**row) for row in rows]


# =========================
# Backend selection
# =========================
class FailoverStorage:
    """
    Proxies every call to ``primary`` until it raises a connection error,
    then logs once and serves the rest of the process from ``fallback``.
    There is no reconnect.
    """

    def __init__(self, primary: Storage, fallback: Storage):
        self.primary = primary
        self.fallback = fallback
        self.active = primary

    @property
    def backend_name(self) -> str:
        return self.active.backend_name

    @property
    def degraded(self) -> bool:
        return self.active is self.fallback

    def __getattr__(self, name: str):
        if not callable(getattr(self.primary, name)):
            return getattr(self.active, name)

        def call(*args, **kwargs):
            try:
                return getattr(self.active, name)(*args, **kwargs)
            except psycopg.OperationalError as exc:
                if self.degraded:
                    raise StorageError() from exc
                LOGGER.warning("Durable storage unreachable (%s); using in-memory storage from now on", exc)
                self.active = self.fallback
                return getattr(self.fallback, name)(*args, **kwargs)

        return call


def open_storage(database_url: str = config.DATABASE_URL):
    if not database_url:
        LOGGER.info("No DATABASE_URL provided, using in-memory storage")
        return MemoryStorage()

    primary = PostgresStorage(database_url)
    try:
        primary.init_db()
    except psycopg.Error as exc:
        LOGGER.warning("Database connection error: %s. Using in-memory storage instead", exc)
        return MemoryStorage()

    LOGGER.info("Database connected successfully")
    return FailoverStorage(primary, MemoryStorage())
