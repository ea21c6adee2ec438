"""Message send coordinator.

Sequences one send request through persistence, history retrieval, the
completion provider and response delivery::

    IDLE -> USER_MESSAGE_PERSISTED -> HISTORY_FETCHED -> PROVIDER_INVOKED
         -> ASSISTANT_MESSAGE_PERSISTED -> RESPONDED

``ABORTED`` is reachable from every non-terminal state and ``FAILED`` from any
error that is not an abort. Client liveness is re-checked at every state
boundary because a disconnect can land between any two suspension points.

A user message exists in storage only while its send is in flight or once
its assistant reply has been stored: every abort or failure before the reply
is persisted deletes it before the outcome is returned.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from app.core.config import settings
from app.domains.chat.gateway import ChatGateway
from app.domains.llm.base import CompletionProvider
from app.exceptions.base import BaseAppException, RequestAbortedError, StorageUnavailableError
from app.exceptions.llm import RETRYABLE_ERRORS, ProviderError
from app.schemas.chat import HistoryEntry
from app.shared.cancellation import Liveness
from app.shared.retry import call_with_retry
from models.message import Message, MessageRole

logger = logging.getLogger(__name__)


class SendState(str, Enum):
    IDLE = "idle"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    HISTORY_FETCHED = "history_fetched"
    PROVIDER_INVOKED = "provider_invoked"
    ASSISTANT_MESSAGE_PERSISTED = "assistant_message_persisted"
    RESPONDED = "responded"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class SendOutcome:
    """Terminal result of one send. Exactly one is produced per request."""

    state: SendState
    user_message: Message | None = None
    assistant_message: Message | None = None
    error: BaseAppException | None = None
    rolled_back: bool = False

    @property
    def should_respond(self) -> bool:
        """False when the client is gone and nothing may be written to it."""
        return self.state in (SendState.RESPONDED, SendState.FAILED)


@dataclass
class _SendRun:
    conversation_id: UUID | str
    state: SendState = SendState.IDLE
    user_message: Message | None = None
    # A failed gateway write rolls the session back and expires loaded rows
    user_message_id: UUID | None = None
    assistant_message: Message | None = None
    rolled_back: bool = False


class MessageSendCoordinator:
    """State machine for a single user message and its assistant reply."""

    def __init__(
        self,
        gateway: ChatGateway,
        provider: CompletionProvider,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        retry_after_ms: int | None = None,
    ):
        """Initialize the coordinator.

        Args:
            gateway: Persistence gateway bound to the request's session.
            provider: Completion provider chosen at startup.
            max_retries: Retries on upstream server errors; defaults to settings.
            retry_base_delay: Backoff unit in seconds; defaults to settings.
            retry_after_ms: Client back-off hint on retryable errors.
        """
        self.gateway = gateway
        self.provider = provider
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.llm_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.retry_after_ms = settings.client_retry_after_ms if retry_after_ms is None else retry_after_ms

    async def send(
        self, conversation_id: UUID | str, content: str, liveness: Liveness
    ) -> SendOutcome:
        """Run one send to a terminal state.

        Never raises for application, storage or provider errors; they are
        reported in the outcome. Task cancellation (e.g. shutdown) still
        propagates after the user message has been rolled back.
        """
        run = _SendRun(conversation_id=conversation_id)
        try:
            return await self._run(run, content, liveness)
        except asyncio.CancelledError:
            logger.info(f"Send for conversation {conversation_id} cancelled in state {run.state.value}")
            await asyncio.shield(self._roll_back(run))
            raise

    async def _run(self, run: _SendRun, content: str, liveness: Liveness) -> SendOutcome:
        if not liveness.is_live():
            logger.info(f"Client gone before send to {run.conversation_id}; nothing written")
            return self._finish(run, SendState.ABORTED)

        try:
            await self.gateway.get_conversation(run.conversation_id)
            run.user_message = await self.gateway.create_message(
                run.conversation_id, MessageRole.USER, content
            )
            run.user_message_id = run.user_message.id
        except BaseAppException as exc:
            # create_message is atomic, so a failure here left nothing behind
            return self._fail(run, exc, liveness)
        self._advance(run, SendState.USER_MESSAGE_PERSISTED)

        try:
            self._checkpoint(liveness)
            history = await self.gateway.list_messages(run.conversation_id)
            turns = [HistoryEntry(role=m.role, content=m.content) for m in history]
            self._advance(run, SendState.HISTORY_FETCHED)

            self._checkpoint(liveness)
            self._advance(run, SendState.PROVIDER_INVOKED)
            reply = await call_with_retry(
                lambda: self.provider.complete(turns, liveness.token),
                liveness.token,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
            )

            # A reply the client no longer waits for is discarded, never stored
            self._checkpoint(liveness)
            run.assistant_message = await self.gateway.create_message(
                run.conversation_id, MessageRole.ASSISTANT, reply
            )
            self._advance(run, SendState.ASSISTANT_MESSAGE_PERSISTED)
        except RequestAbortedError as exc:
            logger.info(f"Send to {run.conversation_id} aborted in state {run.state.value}: {exc.message}")
            await self._roll_back(run)
            return self._finish(run, SendState.ABORTED)
        except BaseAppException as exc:
            await self._roll_back(run)
            return self._fail(run, exc, liveness)
        except Exception as exc:
            logger.exception(f"Unexpected error while sending to {run.conversation_id}")
            await self._roll_back(run)
            return self._fail(run, ProviderError(f"Unexpected error: {type(exc).__name__}"), liveness)

        if not liveness.is_live():
            # The exchange completed; the stored pair is kept even though no response goes out
            logger.info(
                f"Client gone after reply {run.assistant_message.id} was stored; response suppressed"
            )
            return self._finish(run, SendState.ABORTED)
        return self._finish(run, SendState.RESPONDED)

    def _checkpoint(self, liveness: Liveness) -> None:
        if not liveness.is_live():
            raise RequestAbortedError("Client disconnected")

    def _advance(self, run: _SendRun, state: SendState) -> None:
        logger.debug(f"Send {run.conversation_id}: {run.state.value} -> {state.value}")
        run.state = state

    async def _roll_back(self, run: _SendRun) -> None:
        """Delete the user message of an exchange that did not complete."""
        if run.user_message_id is None or run.assistant_message is not None or run.rolled_back:
            return
        try:
            await self.gateway.delete_message(run.user_message_id)
            run.rolled_back = True
            logger.info(f"Rolled back user message {run.user_message_id}")
        except BaseAppException:
            # Rollback must not change the response; the orphan is reported for cleanup
            logger.exception(f"Failed to roll back user message {run.user_message_id}")

    def _fail(self, run: _SendRun, error: BaseAppException, liveness: Liveness) -> SendOutcome:
        if error.retry_after_ms is None and isinstance(error, (*RETRYABLE_ERRORS, StorageUnavailableError)):
            error.retry_after_ms = self.retry_after_ms
        if not liveness.is_live():
            logger.info(f"Send to {run.conversation_id} failed after client left: {error.message}")
            return self._finish(run, SendState.ABORTED, error)
        log = logger.error if error.status_code >= 500 else logger.warning
        log(f"Send to {run.conversation_id} failed in state {run.state.value}: {error.error_code}: {error.message}")
        return self._finish(run, SendState.FAILED, error)

    def _finish(
        self, run: _SendRun, state: SendState, error: BaseAppException | None = None
    ) -> SendOutcome:
        self._advance(run, state)
        return SendOutcome(
            state=state,
            user_message=run.user_message,
            assistant_message=run.assistant_message,
            error=error,
            rolled_back=run.rolled_back,
        )
