"""
Persistence for conversations, messages and volunteer records.

Every write commits its own transaction and wraps SQLAlchemy failures in
``StorageFailed``. Lookup-or-create paths rely on the unique constraints in
``db`` and reuse the winning row when a concurrent writer got there first.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .db import (
    Conversation,
    ConversationStatus,
    Direction,
    Message,
    MessageStatus,
    Volunteer,
    utcnow,
)
from .errors import Forbidden, NotFound, StorageFailed, ValidationFailed

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def mask_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


class _Repository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {what}: {e}")
            raise StorageFailed() from e


class ConversationStore(_Repository):
    # --- conversations ---

    def get(self, conversation_id: int) -> Conversation | None:
        return self.db.get(Conversation, conversation_id)

    def find_by_phone(self, phone_number: str) -> Conversation | None:
        stmt = select(Conversation).where(Conversation.phone_number == phone_number)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_or_reuse(self, phone_number: str, initial_language: str) -> Conversation:
        """
        Return the conversation for ``phone_number``, creating it when absent.

        Two webhook calls for a brand-new number can both miss the lookup; the
        unique constraint on ``phone_number`` rejects the second insert and the
        loser re-reads the winner's row instead of failing.
        """
        existing = self.find_by_phone(phone_number)
        if existing is not None:
            return existing

        conversation = Conversation(
            phone_number=phone_number,
            contact_name=phone_number,
            detected_language=initial_language,
            status=ConversationStatus.NEW.value,
        )
        self.db.add(conversation)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Conversation for {mask_phone(phone_number)} created concurrently, reusing")
            winner = self.find_by_phone(phone_number)
            if winner is None:
                raise StorageFailed()
            return winner
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to create conversation: {e}")
            raise StorageFailed() from e

        self.db.refresh(conversation)
        logger.info(f"Created conversation {conversation.id} for {mask_phone(phone_number)}")
        return conversation

    def update_language(self, conversation: Conversation, language: str) -> None:
        if conversation.detected_language == language:
            return
        logger.debug(
            f"Conversation {conversation.id} language {conversation.detected_language} -> {language}"
        )
        conversation.detected_language = language
        self._commit("update conversation language")

    def touch(
        self,
        conversation: Conversation,
        at: datetime,
        last_volunteer_id: str | None = None,
    ) -> None:
        """
        Advance last-activity bookkeeping after a message.

        A volunteer reply records the replier and moves a ``new`` thread to
        ``active``; an inbound message brings an archived thread back to
        ``active`` so it shows up in the inbox again.
        """
        conversation.last_message_at = at
        if last_volunteer_id is not None:
            conversation.last_volunteer_id = last_volunteer_id
            if conversation.status == ConversationStatus.NEW.value:
                conversation.status = ConversationStatus.ACTIVE.value
        elif conversation.status == ConversationStatus.ARCHIVED.value:
            conversation.status = ConversationStatus.ACTIVE.value
        self._commit("update conversation activity")

    def list_conversations(self, archived: bool = False) -> Sequence[Conversation]:
        stmt = select(Conversation)
        if archived:
            stmt = stmt.where(Conversation.status == ConversationStatus.ARCHIVED.value)
        else:
            stmt = stmt.where(Conversation.status != ConversationStatus.ARCHIVED.value)
        stmt = stmt.order_by(
            Conversation.last_message_at.desc().nulls_last(), Conversation.id.desc()
        )
        return self.db.execute(stmt).scalars().all()

    def set_archived(self, conversation: Conversation, archived: bool) -> None:
        if archived:
            conversation.status = ConversationStatus.ARCHIVED.value
        elif conversation.status == ConversationStatus.ARCHIVED.value:
            conversation.status = ConversationStatus.ACTIVE.value
        self._commit("update conversation status")

    def rename(self, conversation: Conversation, contact_name: str) -> None:
        name = contact_name.strip()
        if not name:
            raise ValidationFailed("Contact name cannot be empty")
        conversation.contact_name = name
        self._commit("rename conversation")

    # --- messages ---

    def append_message(self, conversation: Conversation, **fields: Any) -> Message:
        """
        Insert one message row for ``conversation``.

        A carrier ``delivery_id`` that is already stored means the carrier
        redelivered the same event; the existing row is returned unchanged.
        """
        message = Message(conversation_id=conversation.id, **fields)
        self.db.add(message)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            delivery_id = fields.get("delivery_id")
            existing = self.find_by_delivery_id(delivery_id) if delivery_id else None
            if existing is None:
                logger.error(f"Failed to save message: {e}")
                raise StorageFailed() from e
            logger.info(f"Message with delivery id {delivery_id} already stored")
            return existing
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save message: {e}")
            raise StorageFailed() from e

        self.db.refresh(message)
        return message

    def find_by_delivery_id(self, delivery_id: str) -> Message | None:
        stmt = select(Message).where(Message.delivery_id == delivery_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_messages(self, conversation_id: int) -> Sequence[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.id.asc())
        )
        return self.db.execute(stmt).scalars().all()

    def recent_messages(self, limit: int) -> Sequence[Message]:
        stmt = select(Message).order_by(Message.id.desc()).limit(limit)
        return self.db.execute(stmt).scalars().all()

    def discard_failed(self, message_id: int, requester_id: str) -> None:
        """
        Delete an outbound message that failed delivery (superseded by a retry).

        Only the volunteer who sent it may discard it.
        """
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFound("Message not found")
        if (
            message.direction != Direction.OUTBOUND.value
            or message.status != MessageStatus.FAILED.value
        ):
            raise ValidationFailed("Only failed outbound messages can be discarded")
        if message.volunteer_id != requester_id:
            raise Forbidden("Forbidden - Only the sender can discard this message")
        self.db.delete(message)
        self._commit("delete message")


class VolunteerStore(_Repository):
    def get(self, volunteer_id: str) -> Volunteer | None:
        return self.db.get(Volunteer, volunteer_id)

    def add(
        self,
        email: str,
        name: str,
        *,
        volunteer_id: str | None = None,
        approved: bool = False,
        is_admin: bool = False,
    ) -> Volunteer:
        volunteer = Volunteer(email=email, name=name, approved=approved, is_admin=is_admin)
        if volunteer_id:
            volunteer.id = volunteer_id
        self.db.add(volunteer)
        self._commit("create volunteer")
        self.db.refresh(volunteer)
        return volunteer

    def approve(self, volunteer: Volunteer) -> None:
        if volunteer.approved:
            return
        volunteer.approved = True
        self._commit("approve volunteer")

    def delete(self, volunteer: Volunteer) -> None:
        self.db.delete(volunteer)
        self._commit("delete volunteer")

    def mark_seen(self, volunteer: Volunteer, at: datetime | None = None) -> None:
        volunteer.last_seen = at or utcnow()
        self._commit("update volunteer presence")

    def list_pending(self) -> Sequence[Volunteer]:
        stmt = (
            select(Volunteer)
            .where(Volunteer.approved.is_(False))
            .order_by(Volunteer.created_at.desc())
        )
        return self.db.execute(stmt).scalars().all()

    def list_approved(self) -> Sequence[Volunteer]:
        stmt = select(Volunteer).where(Volunteer.approved.is_(True)).order_by(Volunteer.name.asc())
        return self.db.execute(stmt).scalars().all()


def is_online(volunteer: Volunteer, window_seconds: int, now: datetime | None = None) -> bool:
    if volunteer.last_seen is None:
        return False
    now = now or utcnow()
    return now - as_utc(volunteer.last_seen) < timedelta(seconds=window_seconds)
