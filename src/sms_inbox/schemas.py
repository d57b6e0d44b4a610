"""
Pydantic response and request models for the volunteer-facing JSON API.

Message, conversation and volunteer rows are serialised with their column
names; request bodies keep the camelCase keys the web client sends.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    volunteer_id: str | None = None
    direction: str
    original_text: str
    translated_text: str | None = None
    detected_language: str
    delivery_id: str | None = None
    status: str
    error_detail: str | None = None
    created_at: datetime


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phone_number: str
    contact_name: str
    detected_language: str
    status: str
    last_message_at: datetime | None = None
    last_volunteer_id: str | None = None
    created_at: datetime


class VolunteerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    approved: bool
    is_admin: bool
    last_seen: datetime | None = None
    created_at: datetime


class VolunteerPresence(BaseModel):
    id: str
    name: str
    email: str
    last_seen: datetime | None = None
    online: bool


class SendResponse(BaseModel):
    """Full success: the reply was delivered and stored."""

    success: bool = True
    message: MessageOut
    delivery_id: str = Field(serialization_alias="deliveryId")


class SendPartialResponse(BaseModel):
    """Delivery exhausted its retries; the reply is stored as ``failed``."""

    success: bool = False
    error: str
    message: MessageOut


class VolunteerActionRequest(BaseModel):
    volunteer_id: str = Field(alias="volunteerId", min_length=1)


class ConversationUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact_name: str | None = Field(default=None, alias="contactName")
    archived: bool | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    status: str
    reason: str | None = None
