# app/core/dependencies.py
import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.database import get_db
from app.domains.chat.coordinator import MessageSendCoordinator
from app.domains.chat.gateway import ChatGateway
from app.domains.chat.service import ChatService
from app.domains.llm.base import CompletionProvider
from app.exceptions.llm import ProviderConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["get_db", "get_chat_service", "get_completion_provider", "get_coordinator"]


async def get_chat_service(db: AsyncSession = Depends(get_db)) -> ChatService:
    return ChatService(db)


async def get_completion_provider(request: Request) -> CompletionProvider:
    """Return the provider built by ``create_app``.

    Raises:
        ProviderConfigurationError: The application was started without one.
    """
    provider = getattr(request.app.state, "completion_provider", None)
    if provider is None:
        logger.error("No completion provider on application state")
        raise ProviderConfigurationError("Completion provider was not initialized")
    return provider


async def get_coordinator(
    db: AsyncSession = Depends(get_db),
    provider: CompletionProvider = Depends(get_completion_provider),
) -> MessageSendCoordinator:
    """Build a send coordinator bound to this request's session."""
    return MessageSendCoordinator(
        ChatGateway(db),
        provider,
        max_retries=settings.llm_max_retries,
        retry_base_delay=settings.llm_retry_base_delay,
        retry_after_ms=settings.client_retry_after_ms,
    )
