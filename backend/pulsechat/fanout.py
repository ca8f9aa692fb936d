"""
Message fan-out.

Every live connection sits in one ``Hub``; ``publish`` sends an event to all
of them and each client decides what is relevant to it. Routing per
recipient, if it is ever needed, belongs in ``Hub.publish`` only.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from .errors import ConversationClosed, MessageValidationFailed, UserNotFound, ValidationError
from .gate import ConversationGate
from .models import Message
from .storage import Storage

LOGGER = logging.getLogger("pulsechat.fanout")

MESSAGE_TYPES = {"text", "image", "video", "audio", "file", "gif"}


class Connection:
    def __init__(self, ws: WebSocket, user_id: str):
        self.ws = ws
        self.user_id = user_id


async def ws_send_safe(ws: WebSocket, payload: dict) -> None:
    try:
        await ws.send_text(json.dumps(payload))
    except Exception:
        # will be cleaned on next disconnect
        pass


class Hub:
    def __init__(self):
        self.connections: Set[Connection] = set()

    def add(self, conn: Connection) -> None:
        self.connections.add(conn)

    def discard(self, conn: Connection) -> None:
        self.connections.discard(conn)

    def connection_count(self, user_id: str) -> int:
        return sum(1 for c in self.connections if c.user_id == user_id)

    def is_online(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0

    async def publish(self, event: str, data: Dict[str, Any], exclude: Optional[Connection] = None) -> None:
        frame = {"event": event, "data": data}
        # snapshot: sockets may join or leave while we await sends
        for conn in list(self.connections):
            if conn is exclude:
                continue
            await ws_send_safe(conn.ws, frame)


async def send_message(
    storage: Storage,
    gate: ConversationGate,
    hub: Hub,
    sender_id: str,
    receiver_id: str,
    content: str,
    type: str = "text",
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[int] = None,
) -> Message:
    if not receiver_id:
        raise MessageValidationFailed("Receiver ID is required")
    if not (content or "").strip():
        raise MessageValidationFailed()
    if type not in MESSAGE_TYPES:
        raise ValidationError(f"Unsupported message type: {type}")

    sender = storage.find_user_by_id(sender_id)
    if sender is None:
        raise UserNotFound()
    if storage.find_user_by_id(receiver_id) is None:
        raise UserNotFound("Receiver not found")
    if not gate.is_open(sender_id, receiver_id):
        raise ConversationClosed()

    message = Message(
        content=content,
        type=type,
        sender_id=sender.id,
        receiver_id=receiver_id,
        sender=sender.snapshot(),
        file_url=file_url,
        file_name=file_name,
        file_size=file_size,
    )
    storage.save_message(message)
    LOGGER.info("message %s stored from=%s to=%s type=%s", message.id, sender_id, receiver_id, type)

    await hub.publish("message:receive", message.to_json())
    return message
