"""Conversation API controller with FastAPI endpoints."""

import logging

from fastapi import APIRouter, Body, Depends, Path, Query, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from app.core.config import settings
from app.core.dependencies import get_chat_service, get_coordinator
from app.domains.chat.coordinator import MessageSendCoordinator, SendState
from app.domains.chat.service import ChatService
from app.schemas.chat import MessageCreate, MessageResponse, SendMessageResponse
from app.shared.cancellation import RequestLiveness
from app.shared.pagination import CursorParams

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["conversations"],
)


class DisconnectedResponse(Response):
    """Sends nothing: the client is gone and the connection is left to close."""

    def __init__(self) -> None:
        super().__init__(status_code=499)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.info("Response suppressed for disconnected client")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(service: ChatService = Depends(get_chat_service)):
    """Create a conversation titled ``Conversation #N``."""
    conversation = await service.create_conversation()
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=conversation.to_json())


@router.get("")
async def list_conversations(service: ChatService = Depends(get_chat_service)):
    """List conversations, newest first."""
    conversations = await service.list_conversations()
    return JSONResponse(content=[c.to_json() for c in conversations])


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str = Path(..., description="Conversation ID"),
    service: ChatService = Depends(get_chat_service),
):
    """Delete a conversation and all of its messages."""
    await service.delete_conversation(conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str = Path(..., description="Conversation ID"),
    messages_cursor: str | None = Query(None, alias="messagesCursor", description="Opaque page cursor"),
    limit: int = Query(settings.default_page_limit, ge=1, le=settings.max_page_limit),
    service: ChatService = Depends(get_chat_service),
):
    """Get one page of a conversation's messages.

    Without a cursor the newest page is returned. ``pageInfo.nextCursor``
    reads older messages and ``pageInfo.prevCursor`` newer ones.
    """
    result = await service.get_conversation_messages(
        conversation_id, CursorParams(cursor=messages_cursor, limit=limit)
    )
    return JSONResponse(content=result.to_json())


@router.post("/{conversation_id}/messages")
async def send_message(
    request: Request,
    conversation_id: str = Path(..., description="Conversation ID"),
    payload: MessageCreate = Body(...),
    coordinator: MessageSendCoordinator = Depends(get_coordinator),
):
    """Send a user message and wait for the assistant reply.

    Returns ``{message, reply}``. Failures are rendered by the global
    exception handlers; when the client has disconnected nothing is sent.
    """
    async with RequestLiveness(request.receive) as liveness:
        outcome = await coordinator.send(conversation_id, payload.content, liveness)

    if outcome.state == SendState.RESPONDED:
        body = SendMessageResponse(
            message=MessageResponse.model_validate(outcome.user_message),
            reply=MessageResponse.model_validate(outcome.assistant_message),
        )
        return JSONResponse(content=body.to_json())

    if outcome.state == SendState.FAILED:
        raise outcome.error

    return DisconnectedResponse()
