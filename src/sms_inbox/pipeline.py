from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError
from twilio.request_validator import RequestValidator

from .auth import IdentityGate
from .db import Conversation, Direction, Message, MessageStatus, utcnow
from .errors import (
    Forbidden,
    NotFound,
    SignatureInvalid,
    StorageFailed,
    TranslationFailed,
    ValidationFailed,
)
from .language import DEFAULT_LANGUAGE, TranslationAdapter
from .metrics import record_send_outcome, record_webhook_outcome
from .sms import InboundSms, SendRequest, validation_detail
from .store import ConversationStore, mask_phone
from .twilio_client import Delivered, DeliveryResult, SmsSender, Undelivered, send_with_retry

logger = logging.getLogger(__name__)


@dataclass
class InboundResult:
    message: Message
    conversation: Conversation
    duplicate: bool = False
    # detection or translation problem recorded on the message, if any
    translation_error: str | None = None


@dataclass
class OutboundResult:
    message: Message
    delivery: DeliveryResult


class InboundPipeline:
    """
    One carrier webhook call: verify -> validate -> detect/translate ->
    resolve conversation -> persist -> touch.

    Only signature and shape problems reject the call. Detection and
    translation failures are recorded on the stored message; storage
    failures on the conversation/message writes surface as ``StorageFailed``.
    """

    def __init__(
        self,
        store: ConversationStore,
        translator: TranslationAdapter,
        *,
        auth_token: str | None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.translator = translator
        self.auth_token = auth_token
        self.now = now

    def verify_signature(self, url: str, params: Mapping[str, str], signature: str | None) -> None:
        if not self.auth_token:
            logger.error("TWILIO_AUTH_TOKEN is not configured; cannot verify webhook")
            raise SignatureInvalid()
        if not signature:
            raise SignatureInvalid()
        # RequestValidator signs url + sorted params and compares in constant time
        if not RequestValidator(self.auth_token).validate(url, dict(params), signature):
            raise SignatureInvalid()

    def handle(
        self, url: str, params: Mapping[str, str], signature: str | None
    ) -> InboundResult:
        try:
            self.verify_signature(url, params, signature)
        except SignatureInvalid:
            logger.error("Invalid Twilio signature")
            record_webhook_outcome("invalid_signature")
            raise

        try:
            sms = InboundSms.model_validate(
                {
                    "From": params.get("From", ""),
                    "Body": params.get("Body", ""),
                    "MessageSid": params.get("MessageSid"),
                }
            )
        except ValidationError as e:
            detail = validation_detail(e)
            logger.warning(f"Rejected inbound webhook: {detail}")
            record_webhook_outcome("validation_error")
            raise ValidationFailed(detail) from e

        try:
            result = self._process(sms)
        except StorageFailed:
            record_webhook_outcome("storage_error")
            raise

        record_webhook_outcome("duplicate" if result.duplicate else "stored")
        return result

    def _process(self, sms: InboundSms) -> InboundResult:
        if sms.message_sid:
            existing = self.store.find_by_delivery_id(sms.message_sid)
            if existing is not None:
                logger.info(f"Duplicate webhook for {sms.message_sid}, already stored")
                return InboundResult(
                    message=existing, conversation=existing.conversation, duplicate=True
                )

        language, translation_error = self.translator.detect_with_reason(sms.body)

        translated_text: str | None = None
        if language != DEFAULT_LANGUAGE:
            try:
                translated_text = self.translator.translate(sms.body, language, DEFAULT_LANGUAGE)
            except TranslationFailed as e:
                # stored untranslated with the error on the row
                translation_error = e.detail
                logger.warning(f"Storing inbound message untranslated: {e.detail}")

        conversation = self.store.create_or_reuse(sms.from_number, language)
        self.store.update_language(conversation, language)

        message = self.store.append_message(
            conversation,
            direction=Direction.INBOUND.value,
            original_text=sms.body,
            translated_text=translated_text,
            detected_language=language,
            delivery_id=sms.message_sid,
            status=MessageStatus.RECEIVED.value,
            error_detail=translation_error,
        )

        try:
            self.store.touch(conversation, self.now())
        except StorageFailed:
            # message already committed; next message refreshes the activity fields
            logger.warning(f"Could not update activity for conversation {conversation.id}")

        logger.info(
            f"Stored inbound message {message.id} from {mask_phone(sms.from_number)} "
            f"in conversation {conversation.id} (lang={language})"
        )
        return InboundResult(
            message=message, conversation=conversation, translation_error=translation_error
        )


def failure_detail(delivery: Undelivered) -> str:
    return f"Failed to send SMS after {delivery.attempts} attempts: {delivery.cause}"


class OutboundPipeline:
    """
    One volunteer reply: authorize -> validate -> resolve conversation ->
    translate -> deliver (bounded retry) -> persist -> touch.

    Translation failure aborts before anything is delivered or stored.
    Delivery exhaustion is not an error: the reply is stored as ``failed``
    and returned so the volunteer can retry it.
    """

    def __init__(
        self,
        store: ConversationStore,
        gate: IdentityGate,
        translator: TranslationAdapter,
        sender: SmsSender,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gate = gate
        self.translator = translator
        self.sender = sender
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.now = now

    def _authorize(self, caller_id: str, payload: Mapping[str, object]) -> None:
        self.gate.require_approved(caller_id)
        claimed = payload.get("userId")
        if claimed is not None and claimed != caller_id:
            raise Forbidden("Forbidden - User ID mismatch")

    def send(self, caller_id: str, payload: Mapping[str, object]) -> OutboundResult:
        self._authorize(caller_id, payload)

        try:
            request = SendRequest.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed(validation_detail(e)) from e

        conversation = self.store.get(request.conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")

        target_language = conversation.detected_language or DEFAULT_LANGUAGE
        text_to_send = request.message
        if target_language != DEFAULT_LANGUAGE:
            try:
                text_to_send = self.translator.translate(
                    request.message, DEFAULT_LANGUAGE, target_language
                )
            except TranslationFailed:
                record_send_outcome("translation_error")
                raise

        delivery = send_with_retry(
            self.sender,
            conversation.phone_number,
            text_to_send,
            max_attempts=self.max_attempts,
            backoff_seconds=self.backoff_seconds,
            sleep=self.sleep,
        )
        message = self._persist(
            conversation, caller_id, request.message, target_language, text_to_send, delivery
        )

        try:
            self.store.touch(conversation, self.now(), last_volunteer_id=caller_id)
        except StorageFailed:
            # SMS already delivered and recorded
            logger.warning(f"Could not update activity for conversation {conversation.id}")

        record_send_outcome("sent" if isinstance(delivery, Delivered) else "failed")
        return OutboundResult(message=message, delivery=delivery)

    def _persist(
        self,
        conversation: Conversation,
        volunteer_id: str,
        original_text: str,
        target_language: str,
        sent_text: str,
        delivery: DeliveryResult,
    ) -> Message:
        if isinstance(delivery, Delivered):
            delivery_id: str | None = delivery.delivery_id
            status = MessageStatus.SENT.value
            error_detail = None
        else:
            delivery_id = None
            status = MessageStatus.FAILED.value
            error_detail = failure_detail(delivery)

        message = self.store.append_message(
            conversation,
            volunteer_id=volunteer_id,
            direction=Direction.OUTBOUND.value,
            original_text=original_text,
            translated_text=sent_text if target_language != DEFAULT_LANGUAGE else None,
            detected_language=DEFAULT_LANGUAGE,
            delivery_id=delivery_id,
            status=status,
            error_detail=error_detail,
        )
        logger.info(
            f"Stored outbound message {message.id} for conversation {conversation.id} "
            f"(status={status})"
        )
        return message
