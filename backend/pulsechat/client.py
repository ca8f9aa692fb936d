"""
Receiving side of the global broadcast, as a library model of client behaviour.

The server never imports this module; it models how a connected client
treats the broadcast stream.

The server sends every event to every socket. ``ClientState`` is what a
connected client keeps locally and how it filters those events:

- ``message:receive`` from itself is ignored (already applied on send);
  events for the open conversation are appended, anything else addressed to
  the user bumps a per-sender unread counter and raises one notification per
  message id.
- ``friend-request:*`` events are kept only when the user is the sender or
  receiver.
- ``typing:start`` marks a peer as typing until ``typing:stop`` or until
  ``typing_timeout`` seconds pass.

Polling the REST endpoints (``load_conversation``, ``load_requests``) is the
backstop for events missed while disconnected.
"""
from __future__ import annotations

import time
from typing import Callable, Dict, List, Optional, Set

from . import config


class ClientState:
    def __init__(self, user_id: str, typing_timeout: float = config.TYPING_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.user_id = user_id
        self.typing_timeout = typing_timeout
        self.clock = clock

        self.open_peer: Optional[str] = None
        self.messages: List[dict] = []
        self.unread: Dict[str, int] = {}
        self.notifications: List[dict] = []
        self._seen_ids: Set[str] = set()

        self.incoming_requests: Dict[str, dict] = {}
        self.outgoing_requests: Dict[str, dict] = {}
        self.friends: Set[str] = set()

        self.online: Set[str] = set()
        self._typing_until: Dict[str, float] = {}

    # ---- conversation
    def load_conversation(self, peer_id: str, history: List[dict]) -> None:
        self.open_peer = peer_id
        self.messages = list(history)
        self._seen_ids.update(m["id"] for m in history)
        self.unread.pop(peer_id, None)

    def close_conversation(self) -> None:
        self.open_peer = None
        self.messages = []

    def apply_own_send(self, message: dict) -> None:
        if message["id"] in self._seen_ids:
            return
        self._seen_ids.add(message["id"])
        if message.get("receiverId") == self.open_peer:
            self.messages.append(message)

    def unread_total(self) -> int:
        return sum(self.unread.values())

    # ---- friend requests
    def load_requests(self, incoming: List[dict], outgoing: List[dict]) -> None:
        self.incoming_requests = {r["id"]: r for r in incoming}
        self.outgoing_requests = {r["id"]: r for r in outgoing}

    def can_message(self, peer_id: str) -> bool:
        has_history = self.open_peer == peer_id and bool(self.messages)
        return peer_id in self.friends or has_history

    # ---- presence
    def typing_peers(self) -> Set[str]:
        now = self.clock()
        expired = [u for u, until in self._typing_until.items() if until <= now]
        for user_id in expired:
            del self._typing_until[user_id]
        return set(self._typing_until)

    def is_typing(self, peer_id: str) -> bool:
        return peer_id in self.typing_peers()

    # ---- dispatch
    def handle(self, event: str, data: dict) -> bool:
        """Apply one broadcast frame; returns whether it concerned this user."""
        handler = self._HANDLERS.get(event)
        if handler is None:
            return False
        return handler(self, data)

    def _on_message(self, msg: dict) -> bool:
        if msg.get("senderId") == self.user_id:
            return False
        if msg.get("receiverId") != self.user_id:
            return False
        if msg["id"] in self._seen_ids:
            return False
        self._seen_ids.add(msg["id"])

        sender_id = msg["senderId"]
        self._typing_until.pop(sender_id, None)
        if sender_id == self.open_peer:
            self.messages.append(msg)
            return True

        self.unread[sender_id] = self.unread.get(sender_id, 0) + 1
        sender = msg.get("sender") or {}
        self.notifications.append({
            "messageId": msg["id"],
            "senderId": sender_id,
            "title": sender.get("username") or "New message",
            "body": msg.get("content") if msg.get("type", "text") == "text" else f"Sent a {msg.get('type')}",
        })
        return True

    def _on_request_received(self, req: dict) -> bool:
        if req.get("receiverId") != self.user_id:
            return False
        self.incoming_requests[req["id"]] = req
        return True

    def _on_request_sent(self, req: dict) -> bool:
        if req.get("senderId") != self.user_id:
            return False
        self.outgoing_requests[req["id"]] = req
        return True

    def _on_request_accepted(self, req: dict) -> bool:
        if self.user_id not in (req.get("senderId"), req.get("receiverId")):
            return False
        self.incoming_requests.pop(req["id"], None)
        self.outgoing_requests.pop(req["id"], None)
        peer = req["receiverId"] if req["senderId"] == self.user_id else req["senderId"]
        self.friends.add(peer)
        return True

    def _on_request_closed(self, req: dict) -> bool:
        if self.user_id not in (req.get("senderId"), req.get("receiverId")):
            return False
        self.incoming_requests.pop(req["id"], None)
        self.outgoing_requests.pop(req["id"], None)
        return True

    def _on_joined(self, data: dict) -> bool:
        if data.get("id") == self.user_id:
            return False
        self.online.add(data["id"])
        return True

    def _on_left(self, data: dict) -> bool:
        self.online.discard(data.get("id"))
        self._typing_until.pop(data.get("id"), None)
        return data.get("id") != self.user_id

    def _on_typing_start(self, data: dict) -> bool:
        if data.get("receiverId") != self.user_id:
            return False
        self._typing_until[data["id"]] = self.clock() + self.typing_timeout
        return True

    def _on_typing_stop(self, data: dict) -> bool:
        if data.get("receiverId") != self.user_id:
            return False
        self._typing_until.pop(data.get("id"), None)
        return True

    _HANDLERS = {
        "message:receive": _on_message,
        "friend-request:received": _on_request_received,
        "friend-request:sent": _on_request_sent,
        "friend-request:accepted": _on_request_accepted,
        "friend-request:declined": _on_request_closed,
        "friend-request:cancelled": _on_request_closed,
        "user:joined": _on_joined,
        "user:left": _on_left,
        "typing:start": _on_typing_start,
        "typing:stop": _on_typing_stop,
    }
