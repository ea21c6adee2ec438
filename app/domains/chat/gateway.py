"""Persistence gateway for conversations and messages.

Every public operation is atomic: it either commits or rolls the session back
and raises. Database errors are translated into application exceptions so the
coordinator never sees driver-specific types.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.exceptions.base import (
    BaseAppException,
    ConflictError,
    NotFoundError,
    StorageUnavailableError,
)
from app.shared.pagination import CursorPage, CursorParams, paginate_by_cursor
from models.base import ordered_uuid, utcnow
from models.conversation import Conversation
from models.message import Message, MessageRole

logger = logging.getLogger(__name__)


def _translate(operation: str, error: Exception) -> BaseAppException:
    """Map a driver or SQLAlchemy error onto an application exception."""
    if isinstance(error, IntegrityError):
        logger.warning(f"{operation}: constraint violation: {error.orig}")
        return ConflictError(f"Storage constraint violated during {operation}")
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        logger.error(f"{operation}: database connection lost")
        return StorageUnavailableError(retry_after_ms=settings.client_retry_after_ms)
    if isinstance(error, (OperationalError, InterfaceError, OSError)):
        logger.error(f"{operation}: database unavailable: {error}")
        return StorageUnavailableError(retry_after_ms=settings.client_retry_after_ms)
    logger.error(f"{operation}: unexpected storage error: {error!r}")
    return BaseAppException(f"Storage error during {operation}", error_code="STORAGE_ERROR")


def conversation_key(conversation_id: UUID | str) -> UUID:
    """Parse a conversation id. An id that is not a UUID cannot exist, so it is not found."""
    if isinstance(conversation_id, UUID):
        return conversation_id
    try:
        return UUID(conversation_id)
    except (TypeError, ValueError):
        raise NotFoundError(
            "Conversation not found", details={"conversation_id": str(conversation_id)}
        ) from None


class ChatGateway:
    """Create/read/update/delete access to conversations and messages."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Roll back and translate on any failure inside the block."""
        try:
            yield
        except BaseAppException:
            await self._rollback(operation)
            raise
        except (SQLAlchemyError, OSError) as e:
            await self._rollback(operation)
            raise _translate(operation, e) from e

    async def _rollback(self, operation: str) -> None:
        try:
            await self.db.rollback()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"{operation}: rollback failed: {e!r}")

    # Conversations

    async def get_conversation(self, conversation_id: UUID | str) -> Conversation:
        conversation_id = conversation_key(conversation_id)
        async with self._guard("get_conversation"):
            result = await self.db.execute(
                select(Conversation).where(Conversation.id == conversation_id)
            )
            conversation = result.scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation not found", details={"conversation_id": str(conversation_id)})
        return conversation

    async def count_conversations(self) -> int:
        async with self._guard("count_conversations"):
            result = await self.db.execute(select(func.count(Conversation.id)))
            return result.scalar() or 0

    async def create_conversation(self, title: str) -> Conversation:
        conversation = Conversation(id=ordered_uuid(), title=title, created_at=utcnow())
        async with self._guard("create_conversation"):
            self.db.add(conversation)
            await self.db.commit()
            await self.db.refresh(conversation)
        return conversation

    async def list_conversations(self) -> list[Conversation]:
        async with self._guard("list_conversations"):
            result = await self.db.execute(
                select(Conversation).order_by(Conversation.created_at.desc(), Conversation.id.desc())
            )
            return list(result.scalars().all())

    async def delete_conversation(self, conversation_id: UUID | str) -> None:
        """Delete a conversation and all of its messages in one transaction."""
        conversation_id = conversation_key(conversation_id)
        await self.get_conversation(conversation_id)
        async with self._guard("delete_conversation"):
            await self.db.execute(delete(Message).where(Message.conversation_id == conversation_id))
            await self.db.execute(delete(Conversation).where(Conversation.id == conversation_id))
            await self.db.commit()

    async def update_conversation_activity(self, conversation_id: UUID | str, timestamp: datetime | None) -> None:
        conversation_id = conversation_key(conversation_id)
        async with self._guard("update_conversation_activity"):
            await self._set_activity(conversation_id, timestamp)
            await self.db.commit()

    async def _set_activity(self, conversation_id: UUID, timestamp: datetime | None) -> None:
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_message_at=timestamp)
        )

    # Messages

    async def create_message(self, conversation_id: UUID | str, role: MessageRole, content: str) -> Message:
        """Insert a message and bump the conversation's activity in one commit."""
        conversation_id = conversation_key(conversation_id)
        created_at = utcnow()
        message = Message(
            id=ordered_uuid(created_at),
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=created_at,
        )
        async with self._guard("create_message"):
            exists = await self.db.execute(
                select(Conversation.id).where(Conversation.id == conversation_id)
            )
            if exists.scalar_one_or_none() is None:
                raise NotFoundError(
                    "Conversation not found", details={"conversation_id": str(conversation_id)}
                )
            self.db.add(message)
            await self._set_activity(conversation_id, created_at)
            await self.db.commit()
        return message

    async def delete_message(self, message_id: UUID) -> bool:
        """Delete a message if it exists.

        The owning conversation's ``last_message_at`` is recomputed from what
        remains. Returns False when there was nothing to delete.
        """
        async with self._guard("delete_message"):
            result = await self.db.execute(
                select(Message.conversation_id).where(Message.id == message_id)
            )
            conversation_id = result.scalar_one_or_none()
            if conversation_id is None:
                return False

            await self.db.execute(delete(Message).where(Message.id == message_id))
            latest = await self.db.execute(
                select(func.max(Message.created_at)).where(Message.conversation_id == conversation_id)
            )
            await self._set_activity(conversation_id, latest.scalar())
            await self.db.commit()
        return True

    async def list_messages(self, conversation_id: UUID | str) -> list[Message]:
        """All messages of a conversation in creation order."""
        conversation_id = conversation_key(conversation_id)
        async with self._guard("list_messages"):
            result = await self.db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
            )
            return list(result.scalars().all())

    async def page_messages(self, conversation_id: UUID | str, params: CursorParams) -> CursorPage:
        conversation_id = conversation_key(conversation_id)
        async with self._guard("page_messages"):
            return await paginate_by_cursor(
                self.db,
                select(Message).where(Message.conversation_id == conversation_id),
                created_col=Message.created_at,
                id_col=Message.id,
                params=params,
            )

    # Health

    async def ping(self) -> None:
        async with self._guard("ping"):
            await self.db.execute(text("SELECT 1"))
