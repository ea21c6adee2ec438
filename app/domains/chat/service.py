"""Conversation service layer."""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.domains.chat.gateway import ChatGateway
from app.schemas.chat import (
    ConversationMessagesResponse,
    ConversationResponse,
    MessageResponse,
    PageInfo,
)
from app.shared.pagination import CursorParams

logger = logging.getLogger(__name__)

TITLE_PREFIX = "Conversation #"


class ChatService:
    """Service class for conversation CRUD and message history pages."""

    def __init__(self, db: AsyncSession):
        """Initialize chat service with database session.

        Args:
            db: Async database session for data operations.
        """
        self.gateway = ChatGateway(db)

    async def create_conversation(self) -> ConversationResponse:
        """Create a conversation titled after the durable conversation count.

        The sequence is derived from a count query, not a process counter, so
        numbering survives restarts. Two concurrent creates may read the same
        count and share a title; titles are display strings, not keys.
        """
        existing = await self.gateway.count_conversations()
        conversation = await self.gateway.create_conversation(title=f"{TITLE_PREFIX}{existing + 1}")
        logger.info(f"Created conversation {conversation.id} ({conversation.title})")
        return ConversationResponse.model_validate(conversation)

    async def list_conversations(self) -> list[ConversationResponse]:
        conversations = await self.gateway.list_conversations()
        return [ConversationResponse.model_validate(c) for c in conversations]

    async def delete_conversation(self, conversation_id: UUID | str) -> None:
        await self.gateway.delete_conversation(conversation_id)
        logger.info(f"Deleted conversation {conversation_id}")

    async def get_conversation_messages(
        self, conversation_id: UUID | str, params: CursorParams
    ) -> ConversationMessagesResponse:
        """Get a conversation with one page of its messages.

        Args:
            conversation_id: Conversation ID
            params: Cursor and page size

        Returns:
            Conversation id and title, messages in chronological order, and
            cursors for older (``next``) and newer (``prev``) pages.
        """
        conversation = await self.gateway.get_conversation(conversation_id)
        page = await self.gateway.page_messages(conversation_id, params)

        return ConversationMessagesResponse(
            id=conversation.id,
            title=conversation.title,
            messages=[MessageResponse.model_validate(m) for m in page.items],
            page_info=PageInfo(prev_cursor=page.prev_cursor, next_cursor=page.next_cursor),
        )
