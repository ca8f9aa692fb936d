"""
Conversation gate: the friendship state machine for an unordered user pair.

    NONE -> SENT_BY(x) -> ACCEPTED | DECLINED
    SENT_BY(x) -> NONE          (x cancels)
    DECLINED   -> SENT_BY(any)  (declines do not block a new request)

The pair's state is its most recent friend request. A conversation is open
when the pair is ACCEPTED or when at least one message already exists
between them. Every transition is published on the hub.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple, Optional

from .errors import (
    AlreadyFriends,
    AlreadyPending,
    FriendRequestNotFound,
    InvalidAction,
    RequestNotPending,
    SelfRequest,
    UserNotFound,
)
from .models import FriendRequest, now_utc
from .storage import Storage

if TYPE_CHECKING:
    from .fanout import Hub

LOGGER = logging.getLogger("pulsechat.gate")

NONE = "none"
SENT = "sent"
ACCEPTED = "accepted"
DECLINED = "declined"


class PairState(NamedTuple):
    status: str
    sent_by: Optional[str] = None
    request: Optional[FriendRequest] = None


class ConversationGate:
    def __init__(self, storage: Storage, hub: "Hub"):
        self.storage = storage
        self.hub = hub

    def state(self, user_a: str, user_b: str) -> PairState:
        req = self.storage.find_friend_request(user_a, user_b)
        if req is None:
            return PairState(NONE)
        if req.status == "pending":
            return PairState(SENT, req.sender_id, req)
        return PairState(req.status, None, req)

    def are_friends(self, user_a: str, user_b: str) -> bool:
        return self.state(user_a, user_b).status == ACCEPTED

    def is_open(self, user_a: str, user_b: str) -> bool:
        # messages that predate the friend system keep the conversation open
        return self.are_friends(user_a, user_b) or self.storage.has_messages_between(user_a, user_b)

    def is_gated(self, user_a: str, user_b: str) -> bool:
        return not self.is_open(user_a, user_b)

    def _snapshot(self, user_id: str) -> Optional[dict]:
        user = self.storage.find_user_by_id(user_id)
        return user.snapshot().to_json() if user else None

    async def send_request(self, from_id: str, to_id: str) -> FriendRequest:
        if from_id == to_id:
            raise SelfRequest()
        if self.storage.find_user_by_id(to_id) is None:
            raise UserNotFound()

        current = self.state(from_id, to_id)
        if current.status == SENT:
            raise AlreadyPending()
        if current.status == ACCEPTED:
            raise AlreadyFriends()

        request = self.storage.save_friend_request(FriendRequest(sender_id=from_id, receiver_id=to_id))
        LOGGER.info("friend request %s sent from=%s to=%s", request.id, from_id, to_id)

        payload = {**request.to_json(), "sender": self._snapshot(from_id)}
        await self.hub.publish("friend-request:sent", payload)
        await self.hub.publish("friend-request:received", payload)
        return request

    async def respond(self, request_id: str, by: str, action: str) -> FriendRequest:
        if action not in ("accept", "decline"):
            raise InvalidAction()

        request = self.storage.find_friend_request_by_id(request_id)
        if request is None or request.receiver_id != by:
            raise FriendRequestNotFound()
        if request.status != "pending":
            raise RequestNotPending()

        status = "accepted" if action == "accept" else "declined"
        request = self.storage.save_friend_request(request.model_copy(update={"status": status, "updated_at": now_utc()}))
        LOGGER.info("friend request %s %s by=%s", request.id, status, by)

        await self.hub.publish(f"friend-request:{status}", {**request.to_json(), "receiver": self._snapshot(by)})
        return request

    async def cancel(self, request_id: str, by: str) -> FriendRequest:
        request = self.storage.find_friend_request_by_id(request_id)
        if request is None or request.sender_id != by:
            raise FriendRequestNotFound()
        if request.status != "pending":
            raise RequestNotPending()

        self.storage.delete_friend_request(request.id)
        LOGGER.info("friend request %s cancelled by=%s", request.id, by)

        await self.hub.publish("friend-request:cancelled", {**request.to_json(), "sender": self._snapshot(by)})
        return request
