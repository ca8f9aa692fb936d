from pulsechat.client import ClientState


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _msg(mid, sender, receiver, content="hi", type="text"):
    return {
        "id": mid,
        "senderId": sender,
        "receiverId": receiver,
        "content": content,
        "type": type,
        "sender": {"id": sender, "username": sender.upper(), "avatar": None},
    }


def test_own_messages_are_ignored():
    client = ClientState("u2")
    client.load_conversation("u1", [])

    assert client.handle("message:receive", _msg("m1", "u2", "u1")) is False
    assert client.messages == []


def test_open_conversation_appends_without_unread():
    client = ClientState("u2")
    client.load_conversation("u1", [_msg("m0", "u2", "u1")])

    assert client.handle("message:receive", _msg("m1", "u1", "u2")) is True

    assert [m["id"] for m in client.messages] == ["m0", "m1"]
    assert client.unread == {}
    assert client.notifications == []


def test_other_conversation_counts_unread_and_notifies_once():
    client = ClientState("u2")
    client.load_conversation("u1", [])

    client.handle("message:receive", _msg("m1", "u3", "u2", "yo"))
    client.handle("message:receive", _msg("m1", "u3", "u2", "yo"))
    client.handle("message:receive", _msg("m2", "u3", "u2", "https://media.example/cat.gif", type="gif"))

    assert client.unread == {"u3": 2}
    assert [n["messageId"] for n in client.notifications] == ["m1", "m2"]
    assert client.notifications[0]["title"] == "U3"
    assert client.notifications[0]["body"] == "yo"
    assert client.notifications[1]["body"] == "Sent a gif"


def test_messages_between_other_users_are_dropped():
    client = ClientState("u2")

    assert client.handle("message:receive", _msg("m1", "u1", "u3")) is False
    assert client.unread == {}


def test_opening_conversation_clears_unread():
    client = ClientState("u2")
    client.handle("message:receive", _msg("m1", "u3", "u2"))
    assert client.unread_total() == 1

    client.load_conversation("u3", [_msg("m1", "u3", "u2")])

    assert client.unread_total() == 0
    client.handle("message:receive", _msg("m1", "u3", "u2"))
    assert len(client.messages) == 1


def test_optimistic_send_is_not_duplicated():
    client = ClientState("u1")
    client.load_conversation("u2", [])

    client.apply_own_send(_msg("m1", "u1", "u2"))
    client.apply_own_send(_msg("m1", "u1", "u2"))
    client.handle("message:receive", _msg("m1", "u1", "u2"))

    assert len(client.messages) == 1


def test_friend_request_events_filtered_by_own_id():
    alice, bob, carol = ClientState("u1"), ClientState("u2"), ClientState("u3")
    request = {"id": "r1", "senderId": "u1", "receiverId": "u2", "status": "pending"}

    for client in (alice, bob, carol):
        client.handle("friend-request:sent", request)
        client.handle("friend-request:received", request)

    assert list(alice.outgoing_requests) == ["r1"]
    assert list(bob.incoming_requests) == ["r1"]
    assert carol.incoming_requests == {} and carol.outgoing_requests == {}

    accepted = {**request, "status": "accepted"}
    for client in (alice, bob, carol):
        client.handle("friend-request:accepted", accepted)

    assert alice.friends == {"u2"}
    assert bob.friends == {"u1"}
    assert carol.friends == set()
    assert alice.outgoing_requests == {} and bob.incoming_requests == {}
    assert bob.can_message("u1") is True
    assert carol.can_message("u1") is False


def test_declined_and_cancelled_requests_are_removed():
    bob = ClientState("u2")
    bob.load_requests([{"id": "r1", "senderId": "u1", "receiverId": "u2"}], [])

    bob.handle("friend-request:cancelled", {"id": "r1", "senderId": "u1", "receiverId": "u2"})

    assert bob.incoming_requests == {}
    assert bob.friends == set()


def test_typing_expires_without_stop_event():
    clock = FakeClock()
    client = ClientState("u2", typing_timeout=3, clock=clock)

    client.handle("typing:start", {"id": "u1", "username": "U1", "receiverId": "u2"})
    client.handle("typing:start", {"id": "u3", "username": "U3", "receiverId": "u4"})
    assert client.typing_peers() == {"u1"}

    clock.now += 2.9
    assert client.is_typing("u1") is True
    clock.now += 0.2
    assert client.is_typing("u1") is False


def test_typing_stop_and_incoming_message_clear_indicator():
    client = ClientState("u2", clock=FakeClock())
    client.handle("typing:start", {"id": "u1", "receiverId": "u2"})
    client.handle("typing:stop", {"id": "u1", "receiverId": "u2"})
    assert client.typing_peers() == set()

    client.handle("typing:start", {"id": "u1", "receiverId": "u2"})
    client.handle("message:receive", _msg("m1", "u1", "u2"))
    assert client.typing_peers() == set()


def test_presence_events():
    client = ClientState("u2")

    assert client.handle("user:joined", {"id": "u2"}) is False
    client.handle("user:joined", {"id": "u1", "username": "U1"})
    assert client.online == {"u1"}

    client.handle("user:left", {"id": "u1"})
    assert client.online == set()
    assert client.handle("unknown:event", {}) is False
