"""Chat schemas for request/response serialization."""

from __future__ import annotations

from uuid import UUID

from pydantic import Field, field_validator

from models.message import MessageRole

from .base import BaseModelSchema, BaseSchema, UTCDateTime


class ConversationResponse(BaseModelSchema):
    """Schema for a conversation."""

    title: str
    last_message_at: UTCDateTime | None = None


class MessageCreate(BaseSchema):
    """Schema for posting a user message."""

    content: str = Field(..., min_length=1, max_length=10000, description="Message content")

    @field_validator("content")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message content cannot be blank")
        return v


class MessageResponse(BaseModelSchema):
    """Schema for a stored message."""

    conversation_id: UUID
    role: MessageRole
    content: str


class SendMessageResponse(BaseSchema):
    """Schema for a completed send: the stored user message and its reply."""

    message: MessageResponse
    reply: MessageResponse


class PageInfo(BaseSchema):
    """Opaque navigation cursors. ``nextCursor`` reads older messages."""

    prev_cursor: str | None = None
    next_cursor: str | None = None


class ConversationMessagesResponse(BaseSchema):
    """Schema for one page of a conversation's messages."""

    id: UUID
    title: str
    messages: list[MessageResponse] = Field(default_factory=list)
    page_info: PageInfo


class HistoryEntry(BaseSchema):
    """A ``{role, content}`` pair as sent to the completion provider."""

    role: MessageRole
    content: str


ConversationMessagesResponse.model_rebuild()
SendMessageResponse.model_rebuild()
