import threading
from datetime import timedelta

import pytest

from pulsechat.errors import DuplicateEmail, MessageValidationFailed, UserNotFound
from pulsechat.models import FileMetadata, FriendRequest, Message, User, now_utc
from pulsechat.storage import MemoryStorage


def _storage_with_users(*ids, **kwargs):
    storage = MemoryStorage(**kwargs)
    for uid in ids:
        storage.save_user(User(id=uid, username=uid.upper(), email=f"{uid}@example.com"))
    return storage


def _message(storage, sender_id, receiver_id, content="hi", **kwargs):
    sender = storage.find_user_by_id(sender_id)
    return Message(
        content=content,
        sender_id=sender_id,
        receiver_id=receiver_id,
        sender=sender.snapshot(),
        **kwargs,
    )


def test_duplicate_email_is_rejected():
    storage = _storage_with_users("u1")

    with pytest.raises(DuplicateEmail):
        storage.save_user(User(id="u2", username="other", email="u1@example.com"))


def test_saving_same_user_again_updates_it():
    storage = _storage_with_users("u1")
    user = storage.find_user_by_email("u1@example.com")

    storage.save_user(user.model_copy(update={"status": "online"}))

    assert storage.find_user_by_id("u1").status == "online"
    assert len(storage.list_users()) == 1


def test_update_user_unknown_id():
    storage = MemoryStorage()

    with pytest.raises(UserNotFound):
        storage.update_user("ghost", status="online")


def test_search_users_matches_username_or_email_and_excludes_self():
    storage = _storage_with_users("alice", "alina", "bob")

    found = storage.search_users("ALI", exclude_id="alice", limit=10)
    assert [u.id for u in found] == ["alina"]

    by_email = storage.search_users("bob@", exclude_id="alice", limit=10)
    assert [u.id for u in by_email] == ["bob"]


def test_messages_between_is_symmetric_and_ordered():
    storage = _storage_with_users("u1", "u2", "u3")
    base = now_utc()
    storage.save_message(_message(storage, "u2", "u1", "second", timestamp=base + timedelta(seconds=2)))
    storage.save_message(_message(storage, "u1", "u2", "first", timestamp=base + timedelta(seconds=1)))
    storage.save_message(_message(storage, "u1", "u3", "elsewhere"))

    forward = storage.list_messages_between("u1", "u2")
    backward = storage.list_messages_between("u2", "u1")

    assert [m.content for m in forward] == ["first", "second"]
    assert forward == backward


def test_messages_between_returns_most_recent_page():
    storage = _storage_with_users("u1", "u2", page_size=100)
    for i in range(150):
        storage.save_message(_message(storage, "u1", "u2", f"m{i}"))

    page = storage.list_messages_between("u1", "u2")

    assert len(page) == 100
    assert page[0].content == "m50"
    assert page[-1].content == "m149"


def test_memory_retention_evicts_oldest_first():
    storage = _storage_with_users("u1", "u2")
    for i in range(1001):
        storage.save_message(_message(storage, "u1", "u2", f"m{i}"))

    assert len(storage.messages) == 1000
    assert storage.messages[0].content == "m1"
    assert storage.messages[-1].content == "m1000"


def test_save_message_requires_content_and_known_users():
    storage = _storage_with_users("u1", "u2")

    with pytest.raises(MessageValidationFailed):
        storage.save_message(_message(storage, "u1", "u2", "   "))
    with pytest.raises(MessageValidationFailed):
        storage.save_message(_message(storage, "u1", "", "hello"))
    with pytest.raises(UserNotFound):
        storage.save_message(_message(storage, "u1", "ghost", "hello"))

    assert not storage.has_messages_between("u1", "u2")


def test_find_friend_request_returns_latest_for_pair_in_either_direction():
    storage = _storage_with_users("u1", "u2")
    old = FriendRequest(sender_id="u1", receiver_id="u2", status="declined")
    new = FriendRequest(sender_id="u2", receiver_id="u1", created_at=old.created_at + timedelta(seconds=1))
    storage.save_friend_request(old)
    storage.save_friend_request(new)

    assert storage.find_friend_request("u1", "u2").id == new.id
    assert storage.find_friend_request("u2", "u1").id == new.id
    assert storage.find_friend_request("u1", "u3") is None


def test_pending_request_listings():
    storage = _storage_with_users("u1", "u2", "u3")
    pending = storage.save_friend_request(FriendRequest(sender_id="u1", receiver_id="u2"))
    storage.save_friend_request(FriendRequest(sender_id="u3", receiver_id="u2", status="accepted"))

    assert [r.id for r in storage.list_incoming_pending_requests("u2")] == [pending.id]
    assert [r.id for r in storage.list_outgoing_pending_requests("u1")] == [pending.id]
    assert storage.list_outgoing_pending_requests("u3") == []

    assert storage.delete_friend_request(pending.id) is True
    assert storage.delete_friend_request(pending.id) is False
    assert storage.find_friend_request_by_id(pending.id) is None


def test_files_listed_newest_first():
    storage = MemoryStorage()
    base = now_utc()
    older = FileMetadata(
        filename="a.png", original_name="a.png", file_url="/uploads/a.png", file_size=1,
        file_type="image", mime_type="image/png", uploaded_by="u1", uploaded_at=base,
    )
    newer = older.model_copy(update={"id": "f2", "filename": "b.png", "uploaded_at": base + timedelta(minutes=1)})
    storage.save_file_metadata(older)
    storage.save_file_metadata(newer)

    assert [f.id for f in storage.list_files_by_uploader("u1")] == ["f2", older.id]
    assert storage.find_file_metadata("f2").filename == "b.png"
    assert storage.list_files_by_uploader("u2") == []


def test_search_results_ordered_by_username():
    storage = MemoryStorage()
    for uid, name in (("u1", "zara"), ("u2", "Bella"), ("u3", "amy")):
        storage.save_user(User(id=uid, username=name, email=f"{uid}@example.com"))

    found = storage.search_users("a", exclude_id="nobody", limit=2)

    assert [u.username for u in found] == ["amy", "Bella"]


def test_concurrent_reader_and_writer():
    storage = _storage_with_users("u1", "u2")
    for i in range(1000):
        storage._insert_message(_message(storage, "u1", "u2", f"m{i}"))
    errors = []
    done = threading.Event()

    def reader():
        try:
            while not done.is_set():
                storage.list_messages_between("u1", "u2")
                storage.list_incoming_pending_requests("u2")
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for i in range(3000):
            storage._insert_message(_message(storage, "u2", "u1", f"r{i}"))
            storage.save_friend_request(FriendRequest(sender_id="u1", receiver_id="u2"))
    finally:
        done.set()
        thread.join()

    assert errors == []
    assert len(storage.messages) == 1000
