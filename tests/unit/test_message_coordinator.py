"""
Unit tests for the message send coordinator.

The coordinator runs against a real session, a scripted completion backend
and a fake client connection, so every abort and failure path can be driven
deterministically.
"""

import asyncio
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.domains.chat.coordinator import MessageSendCoordinator, SendState
from app.domains.chat.gateway import ChatGateway
from app.exceptions.base import StorageUnavailableError
from app.exceptions.llm import ProviderError
from models import MessageRole
from tests.factories import MOCK_REPLY, FakeLiveness, ScriptedBackend, scripted_provider


def make_coordinator(gateway, backend, timeout=1.0, max_retries=2):
    return MessageSendCoordinator(
        gateway,
        scripted_provider(backend, timeout=timeout),
        max_retries=max_retries,
        retry_base_delay=0.01,
        retry_after_ms=1000,
    )


async def stored_contents(gateway, conversation_id):
    return [(m.role, m.content) for m in await gateway.list_messages(conversation_id)]


class TestSuccessfulSend:
    """Test cases for the happy path."""

    async def test_send_persists_exchange(self, gateway, conversation):
        """Test a send stores the user message and the assistant reply."""
        backend = ScriptedBackend()
        coordinator = make_coordinator(gateway, backend)

        outcome = await coordinator.send(conversation.id, "Hello", FakeLiveness())

        assert outcome.state == SendState.RESPONDED
        assert outcome.should_respond
        assert outcome.error is None
        assert outcome.user_message.content == "Hello"
        assert outcome.assistant_message.content == MOCK_REPLY
        assert outcome.assistant_message.created_at >= outcome.user_message.created_at
        assert await stored_contents(gateway, conversation.id) == [
            (MessageRole.USER, "Hello"),
            (MessageRole.ASSISTANT, MOCK_REPLY),
        ]

    async def test_provider_sees_full_history(self, gateway, conversation_with_exchange):
        """Test the provider receives earlier turns plus the new message."""
        backend = ScriptedBackend()

        await make_coordinator(gateway, backend).send(
            conversation_with_exchange.id, "And now?", FakeLiveness()
        )

        assert backend.requests[0]["content"] == "user: Hello\nassistant: Hi there\nuser: And now?"

    async def test_upstream_errors_retried_then_succeed(self, gateway, conversation):
        """Test two upstream faults followed by a success still respond."""
        backend = ScriptedBackend(500, 500)

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.RESPONDED
        assert backend.calls == 3
        assert len(await gateway.list_messages(conversation.id)) == 2


class TestFailedSend:
    """Test cases for failures while the client is still connected."""

    async def test_unknown_conversation_writes_nothing(self, gateway):
        """Test a send to an unknown conversation fails with NOT_FOUND."""
        backend = ScriptedBackend()

        outcome = await make_coordinator(gateway, backend).send(uuid4(), "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.error_code == "NOT_FOUND"
        assert outcome.user_message is None
        assert backend.calls == 0

    async def test_timeout_rolls_back(self, gateway, conversation):
        """Test a provider timeout fails with 504 and removes the user message."""
        backend = ScriptedBackend("hang")

        outcome = await make_coordinator(gateway, backend, timeout=0.05).send(
            conversation.id, "Hi", FakeLiveness()
        )

        assert outcome.state == SendState.FAILED
        assert outcome.error.status_code == 504
        assert outcome.error.retry_after_ms == 1000
        assert outcome.rolled_back
        assert await gateway.list_messages(conversation.id) == []

    async def test_retries_exhausted_rolls_back(self, gateway, conversation):
        """Test three upstream faults fail the send after three attempts."""
        backend = ScriptedBackend(500, 500, 500, 500)

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.error_code == "UPSTREAM_SERVER_ERROR"
        assert outcome.error.retry_after_ms == 1000
        assert backend.calls == 3
        assert await gateway.list_messages(conversation.id) == []

    async def test_terminal_provider_error_has_no_retry_hint(self, gateway, conversation):
        """Test a malformed reply fails without retry and without retryAfterMs."""
        backend = ScriptedBackend("malformed")

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.error_code == "PROVIDER_ERROR"
        assert outcome.error.retry_after_ms is None
        assert backend.calls == 1
        assert await gateway.list_messages(conversation.id) == []

    async def test_unexpected_error_becomes_provider_error(self, gateway, conversation):
        """Test an unexpected exception is reported as a provider error."""
        provider = AsyncMock()
        provider.complete.side_effect = RuntimeError("bug")
        coordinator = MessageSendCoordinator(gateway, provider, retry_base_delay=0.01)

        outcome = await coordinator.send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert isinstance(outcome.error, ProviderError)
        assert await gateway.list_messages(conversation.id) == []

    async def test_rollback_failure_keeps_original_error(self, gateway, conversation):
        """Test a failed rollback is logged and does not change the outcome."""
        backend = ScriptedBackend(400)

        with patch.object(
            gateway, "delete_message", AsyncMock(side_effect=StorageUnavailableError())
        ):
            outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.error_code == "PROVIDER_ERROR"
        assert outcome.rolled_back is False

    async def test_storage_failure_on_user_message(self, gateway, conversation):
        """Test a storage outage before anything is written fails with 503."""
        backend = ScriptedBackend()

        with patch.object(
            gateway, "create_message", AsyncMock(side_effect=StorageUnavailableError())
        ):
            outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.status_code == 503
        assert outcome.error.retry_after_ms == 1000
        assert backend.calls == 0

    async def test_conversation_deleted_during_provider_call(
        self, gateway, session_factory, conversation
    ):
        """Test a conversation removed mid-send fails with NOT_FOUND and leaves nothing."""
        conversation_id = conversation.id

        async def delete_then_reply(history, token):
            async with session_factory() as other:
                await ChatGateway(other).delete_conversation(conversation_id)
            return "too late"

        provider = AsyncMock()
        provider.complete.side_effect = delete_then_reply
        coordinator = MessageSendCoordinator(gateway, provider, retry_base_delay=0.01)

        outcome = await coordinator.send(conversation_id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.error_code == "NOT_FOUND"
        assert outcome.error.status_code == 404
        assert outcome.assistant_message is None
        assert await gateway.list_messages(conversation_id) == []

    @pytest.mark.parametrize(
        "error,status_code,retry_after_ms",
        [
            (IntegrityError("INSERT", {}, Exception("duplicate key")), 400, None),
            (OperationalError("COMMIT", {}, Exception("connection reset")), 503, 1000),
        ],
    )
    async def test_assistant_commit_failure_rolls_back(
        self, gateway, conversation, error, status_code, retry_after_ms
    ):
        """Test a failed write of the reply is classified and removes the user message."""
        conversation_id = conversation.id
        backend = ScriptedBackend()
        real_commit = gateway.db.commit
        commits = 0

        async def fail_second_commit():
            nonlocal commits
            commits += 1
            if commits == 2:
                raise error
            await real_commit()

        with patch.object(gateway.db, "commit", side_effect=fail_second_commit):
            outcome = await make_coordinator(gateway, backend).send(conversation_id, "Hi", FakeLiveness())

        assert outcome.state == SendState.FAILED
        assert outcome.error.status_code == status_code
        assert outcome.error.retry_after_ms == retry_after_ms
        assert outcome.rolled_back
        assert backend.calls == 1
        assert await gateway.list_messages(conversation_id) == []


class TestAbortedSend:
    """Test cases for client disconnects."""

    async def test_disconnected_before_start(self, gateway, conversation):
        """Test nothing is written when the client is already gone."""
        liveness = FakeLiveness()
        liveness.disconnect()
        backend = ScriptedBackend()

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", liveness)

        assert outcome.state == SendState.ABORTED
        assert not outcome.should_respond
        assert backend.calls == 0
        assert await gateway.list_messages(conversation.id) == []

    async def test_disconnect_during_provider_call(self, gateway, conversation):
        """Test a disconnect mid-call aborts promptly and rolls back."""
        backend = ScriptedBackend("hang")
        liveness = FakeLiveness()
        asyncio.get_running_loop().call_later(0.05, liveness.disconnect)

        outcome = await asyncio.wait_for(
            make_coordinator(gateway, backend, timeout=10.0).send(conversation.id, "Hi", liveness),
            timeout=2.0,
        )

        assert outcome.state == SendState.ABORTED
        assert outcome.rolled_back
        assert outcome.error is None
        assert await gateway.list_messages(conversation.id) == []

    async def test_disconnect_during_backoff(self, gateway, conversation):
        """Test a disconnect during a retry wait stops retrying and rolls back."""
        backend = ScriptedBackend(500, 500)
        liveness = FakeLiveness()
        coordinator = MessageSendCoordinator(
            gateway, scripted_provider(backend), max_retries=2, retry_base_delay=5.0
        )
        asyncio.get_running_loop().call_later(0.05, liveness.disconnect)

        outcome = await asyncio.wait_for(coordinator.send(conversation.id, "Hi", liveness), timeout=2.0)

        assert outcome.state == SendState.ABORTED
        assert backend.calls == 1
        assert await gateway.list_messages(conversation.id) == []

    async def test_reply_discarded_when_client_leaves_before_persist(self, gateway, conversation):
        """Test a reply arriving after the client left is never stored."""
        backend = ScriptedBackend()
        # Live at start, before history and before the provider call
        liveness = FakeLiveness(disconnect_after_checks=3)

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", liveness)

        assert outcome.state == SendState.ABORTED
        assert backend.calls == 1
        assert outcome.assistant_message is None
        assert await gateway.list_messages(conversation.id) == []

    async def test_exchange_kept_when_client_leaves_after_persist(self, gateway, conversation):
        """Test a stored exchange is kept even though no response is sent."""
        backend = ScriptedBackend()
        # Live through every check up to and including the one before the reply is stored
        liveness = FakeLiveness(disconnect_after_checks=4)

        outcome = await make_coordinator(gateway, backend).send(conversation.id, "Hi", liveness)

        assert outcome.state == SendState.ABORTED
        assert not outcome.should_respond
        assert outcome.rolled_back is False
        assert await stored_contents(gateway, conversation.id) == [
            (MessageRole.USER, "Hi"),
            (MessageRole.ASSISTANT, MOCK_REPLY),
        ]

    async def test_failure_after_disconnect_is_aborted(self, gateway, conversation):
        """Test an error surfacing once the client left produces no response."""
        backend = ScriptedBackend(400)
        liveness = FakeLiveness()
        original_complete = scripted_provider(backend).complete

        async def complete_then_leave(history, token):
            try:
                return await original_complete(history, token)
            finally:
                liveness.disconnect()

        provider = AsyncMock()
        provider.complete.side_effect = complete_then_leave
        coordinator = MessageSendCoordinator(gateway, provider, retry_base_delay=0.01)

        outcome = await coordinator.send(conversation.id, "Hi", liveness)

        assert outcome.state == SendState.ABORTED
        assert outcome.error.error_code == "PROVIDER_ERROR"
        assert await gateway.list_messages(conversation.id) == []

    async def test_task_cancellation_rolls_back_and_propagates(self, gateway, conversation):
        """Test cancelling the send task removes the user message and re-raises."""
        backend = ScriptedBackend("hang")
        coordinator = make_coordinator(gateway, backend, timeout=10.0)

        task = asyncio.create_task(coordinator.send(conversation.id, "Hi", FakeLiveness()))
        while backend.calls == 0:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await gateway.list_messages(conversation.id) == []


class TestNoOrphans:
    """The user message never outlives a send that did not complete."""

    @pytest.mark.parametrize(
        "outcomes,expected_state",
        [
            (("ok",), SendState.RESPONDED),
            ((500, "ok"), SendState.RESPONDED),
            ((500, 500, 500), SendState.FAILED),
            (("malformed",), SendState.FAILED),
            ((404,), SendState.FAILED),
            (("hang",), SendState.FAILED),
        ],
    )
    async def test_every_user_message_has_a_reply(self, gateway, conversation, outcomes, expected_state):
        """Test storage holds only complete exchanges after each send."""
        backend = ScriptedBackend(*outcomes)

        outcome = await make_coordinator(gateway, backend, timeout=0.05).send(
            conversation.id, "Hi", FakeLiveness()
        )

        assert outcome.state == expected_state
        messages = await gateway.list_messages(conversation.id)
        roles = [m.role for m in messages]
        assert roles.count(MessageRole.USER) == roles.count(MessageRole.ASSISTANT)
