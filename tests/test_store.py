from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from sms_inbox.db import Conversation, Message, Volunteer
from sms_inbox.errors import Forbidden, NotFound, ValidationFailed
from sms_inbox.store import ConversationStore, VolunteerStore, is_online

PHONE = "+15551234567"


def _count_conversations(db: Session, phone: str = PHONE) -> int:
    stmt = select(func.count()).select_from(Conversation).where(Conversation.phone_number == phone)
    return db.execute(stmt).scalar_one()


def test_create_or_reuse_creates_once(db: Session) -> None:
    store = ConversationStore(db)

    first = store.create_or_reuse(PHONE, "es")
    second = store.create_or_reuse(PHONE, "fr")

    assert first.id == second.id
    assert first.detected_language == "es"
    assert first.contact_name == PHONE
    assert first.status == "new"
    assert _count_conversations(db) == 1


def test_create_or_reuse_race_reuses_winner(
    session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    """A writer that misses the lookup and loses the insert reuses the winner's row."""
    winner_db = session_factory()
    loser_db = session_factory()
    try:
        winner = ConversationStore(winner_db).create_or_reuse(PHONE, "es")

        loser = ConversationStore(loser_db)
        original_find = ConversationStore.find_by_phone
        misses = {"left": 1}

        def stale_find(self: ConversationStore, phone_number: str) -> Conversation | None:
            if misses["left"]:
                misses["left"] -= 1
                return None
            return original_find(self, phone_number)

        monkeypatch.setattr(ConversationStore, "find_by_phone", stale_find)
        reused = loser.create_or_reuse(PHONE, "en")

        assert reused.id == winner.id
        assert reused.detected_language == "es"
        assert _count_conversations(loser_db) == 1
    finally:
        winner_db.close()
        loser_db.close()


def test_update_language_only_when_changed(db: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "es")

    commits: list[str] = []
    monkeypatch.setattr(store, "_commit", lambda what: commits.append(what))
    store.update_language(conversation, "es")
    assert commits == []

    store.update_language(conversation, "so")
    assert conversation.detected_language == "so"
    assert commits == ["update conversation language"]


def test_touch_inbound_reopens_archived(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")
    store.set_archived(conversation, True)
    at = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)

    store.touch(conversation, at)

    assert conversation.status == "active"
    assert conversation.last_volunteer_id is None
    assert conversation.last_message_at is not None


def test_touch_reply_records_volunteer_and_activates(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")

    store.touch(conversation, datetime.now(UTC), last_volunteer_id="vol-1")

    assert conversation.status == "active"
    assert conversation.last_volunteer_id == "vol-1"


def test_messages_keep_append_order(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")
    for i in range(3):
        store.append_message(
            conversation,
            direction="inbound",
            original_text=f"msg {i}",
            detected_language="en",
            status="received",
        )

    texts = [m.original_text for m in store.list_messages(conversation.id)]
    assert texts == ["msg 0", "msg 1", "msg 2"]


def test_append_message_with_known_delivery_id_returns_existing(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")
    fields = dict(
        direction="inbound",
        original_text="hello",
        detected_language="en",
        delivery_id="SM1",
        status="received",
    )

    first = store.append_message(conversation, **fields)
    second = store.append_message(conversation, **fields)

    assert first.id == second.id
    assert len(store.list_messages(conversation.id)) == 1


def test_list_conversations_filters_archived(db: Session) -> None:
    store = ConversationStore(db)
    open_conv = store.create_or_reuse("+15550000001", "en")
    archived = store.create_or_reuse("+15550000002", "en")
    store.set_archived(archived, True)

    assert [c.id for c in store.list_conversations()] == [open_conv.id]
    assert [c.id for c in store.list_conversations(archived=True)] == [archived.id]

    store.set_archived(archived, False)
    assert archived.status == "active"


def test_rename_rejects_blank(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")

    with pytest.raises(ValidationFailed):
        store.rename(conversation, "   ")
    store.rename(conversation, "  Maria  ")
    assert conversation.contact_name == "Maria"


def test_discard_failed_only_removes_failed_outbound(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")
    failed = store.append_message(
        conversation,
        volunteer_id="vol-a",
        direction="outbound",
        original_text="a",
        status="failed",
    )
    sent = store.append_message(
        conversation,
        volunteer_id="vol-a",
        direction="outbound",
        original_text="b",
        status="sent",
    )

    with pytest.raises(ValidationFailed):
        store.discard_failed(sent.id, "vol-a")
    with pytest.raises(NotFound):
        store.discard_failed(9999, "vol-a")
    with pytest.raises(Forbidden):
        store.discard_failed(failed.id, "vol-b")

    store.discard_failed(failed.id, "vol-a")
    assert [m.id for m in store.list_messages(conversation.id)] == [sent.id]


def test_deleting_conversation_cascades_to_messages(db: Session) -> None:
    store = ConversationStore(db)
    conversation = store.create_or_reuse(PHONE, "en")
    store.append_message(conversation, direction="inbound", original_text="x", status="received")

    db.delete(conversation)
    db.commit()

    assert db.execute(select(func.count()).select_from(Message)).scalar_one() == 0


def test_volunteer_approve_is_idempotent(db: Session) -> None:
    volunteers = VolunteerStore(db)
    volunteer = volunteers.add("a@example.org", "A")
    assert volunteer.approved is False

    volunteers.approve(volunteer)
    volunteers.approve(volunteer)

    assert volunteers.get(volunteer.id).approved is True  # type: ignore[union-attr]


def test_pending_and_approved_lists(db: Session) -> None:
    volunteers = VolunteerStore(db)
    pending = volunteers.add("p@example.org", "Pending")
    approved = volunteers.add("z@example.org", "Zed", approved=True)
    also_approved = volunteers.add("b@example.org", "Bea", approved=True)

    assert [v.id for v in volunteers.list_pending()] == [pending.id]
    assert [v.id for v in volunteers.list_approved()] == [also_approved.id, approved.id]


def test_is_online_window() -> None:
    now = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
    volunteer = Volunteer(email="x@example.org", name="X")

    assert is_online(volunteer, 120, now) is False
    volunteer.last_seen = now - timedelta(seconds=30)
    assert is_online(volunteer, 120, now) is True
    # naive timestamps (as SQLite returns them) are treated as UTC
    volunteer.last_seen = (now - timedelta(minutes=5)).replace(tzinfo=None)
    assert is_online(volunteer, 120, now) is False
