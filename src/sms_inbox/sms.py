from __future__ import annotations

import re
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

MAX_SMS_CHARS: Final[int] = 1600

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")

# Empty TwiML: acknowledges the webhook without sending an auto-reply
EMPTY_TWIML: Final[str] = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def sms_length(text: str) -> int:
    """Length in UTF-16 code units, the unit carrier segment limits are counted in."""
    return len(text.encode("utf-16-le")) // 2


class InboundSms(BaseModel):
    """The subset of a Twilio messaging webhook the inbox consumes."""

    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field(alias="From")
    body: str = Field(alias="Body")
    message_sid: str | None = Field(default=None, alias="MessageSid")

    @field_validator("from_number")
    @classmethod
    def validate_e164(cls, v: str) -> str:
        if not v:
            raise PydanticCustomError("missing_field", "Missing required fields")
        if not E164_RE.match(v):
            raise PydanticCustomError("phone_format", "Invalid phone number format")
        return v

    @field_validator("body")
    @classmethod
    def validate_length(cls, v: str) -> str:
        if not v:
            raise PydanticCustomError("missing_field", "Missing required fields")
        if sms_length(v) > MAX_SMS_CHARS:
            raise PydanticCustomError("message_length", "Invalid message length")
        return v

    @field_validator("message_sid")
    @classmethod
    def blank_sid_is_none(cls, v: str | None) -> str | None:
        return v or None


class SendRequest(BaseModel):
    """Volunteer reply payload: ``{conversationId, message, userId}``."""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: int = Field(alias="conversationId")
    message: str
    user_id: str = Field(alias="userId", min_length=1)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        if not v.strip():
            raise PydanticCustomError("message_empty", "Message cannot be empty")
        if sms_length(v) > MAX_SMS_CHARS:
            raise PydanticCustomError(
                "message_length", f"Message too long (max {MAX_SMS_CHARS} characters)"
            )
        return v


def validation_detail(exc: ValidationError) -> str:
    """Collapse a pydantic error into the single stable message clients see."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    if first["type"] in ("missing", "string_too_short", "missing_field"):
        return "Missing required fields"
    return str(first["msg"])
