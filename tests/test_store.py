"""Local message store: partitions, legacy layout, idempotent mutation."""

import json

import pytest

from amp_client.address import AddressResolver
from amp_client.envelope import create_envelope, generate_message_id
from amp_client.errors import InvalidInputError, MessageNotFoundError
from amp_client.store import MessageStore, validate_attachment_id, validate_message_id


@pytest.fixture
def store(tmp_path):
    return MessageStore(tmp_path / "messages")


def make_message(sender="bob@acme.mesh.local", subject="Hello", timestamp=None):
    resolver = AddressResolver(tenant="acme", local_domain="mesh.local")
    message = create_envelope(sender, resolver, "agent@acme.mesh.local", subject, "body")
    if timestamp:
        message.envelope.timestamp = timestamp
    return message


def test_save_inbox_partitions_by_sender(store, tmp_path):
    message = make_message()
    path = store.save_inbox(message)
    assert path == tmp_path / "messages" / "inbox" / "bob_acme_mesh_local" / f"{message.id}.json"
    stored = store.get(message.id)
    assert stored.status == "unread"
    assert stored.local.received_at
    assert store.contains(message.id)


def test_save_sent_partitions_by_recipient(store, tmp_path):
    message = make_message()
    path = store.save_sent(message)
    assert path.parent == tmp_path / "messages" / "sent" / "agent_acme_mesh_local"
    assert store.get(message.id, "sent").local.sent_at


def test_list_newest_first_and_status_filter(store):
    older = make_message(subject="older", timestamp="2026-01-01T00:00:00Z")
    newer = make_message(sender="carol@acme.mesh.local", subject="newer", timestamp="2026-02-01T00:00:00Z")
    store.save_inbox(older)
    store.save_inbox(newer)

    assert [m.envelope.subject for m in store.list()] == ["newer", "older"]

    store.mark_read(older.id)
    assert [m.id for m in store.list(status="unread")] == [newer.id]
    assert [m.id for m in store.list(status="read")] == [older.id]
    assert len(store.list(status="all")) == 2


def test_legacy_flat_layout_is_found(store, tmp_path):
    message = make_message()
    record = message.wire()
    record["metadata"] = {"status": "read"}
    inbox = tmp_path / "messages" / "inbox"
    inbox.mkdir(parents=True)
    (inbox / f"{message.id}.json").write_text(json.dumps(record))

    assert store.contains(message.id)
    assert store.get(message.id).status == "read"
    assert [m.id for m in store.list()] == [message.id]


def test_mark_read_and_delete_missing_are_noops(store):
    missing = generate_message_id()
    assert store.mark_read(missing) is False
    assert store.delete(missing) is False
    with pytest.raises(MessageNotFoundError):
        store.get(missing)


def test_mark_read_then_delete(store):
    message = make_message()
    store.save_inbox(message)
    assert store.mark_read(message.id) is True
    assert store.get(message.id).status == "read"
    assert store.delete(message.id) is True
    assert not store.contains(message.id)
    assert store.mark_read(message.id) is False


@pytest.mark.parametrize("bad", ["../../etc/passwd", "msg_123", "msg_abc_def", "msg_1_a/b", ""])
def test_invalid_ids_rejected_before_io(store, bad):
    with pytest.raises(InvalidInputError):
        validate_message_id(bad)
    with pytest.raises(InvalidInputError):
        store.find(bad)


def test_id_formats():
    assert validate_message_id("msg_1700000000000_ab12cd34")
    assert validate_message_id("msg-1700000000000-ab12cd34")
    assert validate_attachment_id("att_1700000000000_ab12cd34")
    with pytest.raises(InvalidInputError):
        validate_attachment_id("msg_1700000000000_ab12cd34")


def test_unknown_box_rejected(store):
    with pytest.raises(InvalidInputError):
        store.list("trash")
