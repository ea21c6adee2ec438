"""
Unit tests for completion providers and the provider factory.
"""

import asyncio
import json
import time

import httpx
import pytest

from app.core.config import Settings
from app.domains.llm.factory import create_completion_provider
from app.domains.llm.mock import MockCompletionProvider, flatten_history
from app.domains.llm.ollama import OllamaCompletionProvider
from app.exceptions.base import RequestAbortedError
from app.exceptions.llm import (
    ProviderConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    UpstreamServerError,
)
from app.schemas.chat import HistoryEntry
from app.shared.cancellation import CancellationToken
from models import MessageRole
from tests.factories import MOCK_REPLY, ScriptedBackend, scripted_provider

HISTORY = [
    HistoryEntry(role=MessageRole.USER, content="Hello"),
    HistoryEntry(role=MessageRole.ASSISTANT, content="Hi there"),
    HistoryEntry(role=MessageRole.USER, content="How are you?"),
]


def ollama_provider(handler, timeout: float = 1.0) -> OllamaCompletionProvider:
    return OllamaCompletionProvider(
        "http://ollama:11434", "llama3", timeout=timeout, transport=httpx.MockTransport(handler)
    )


class TestMockCompletionProvider:
    """Test cases for MockCompletionProvider."""

    async def test_complete_returns_reply(self):
        """Test a 200 answer yields the completion text."""
        backend = ScriptedBackend()
        provider = scripted_provider(backend)

        reply = await provider.complete(HISTORY, CancellationToken())

        assert reply == MOCK_REPLY
        assert backend.calls == 1

    async def test_sends_flattened_history(self):
        """Test the request body carries the whole history as role-prefixed lines."""
        backend = ScriptedBackend()

        await scripted_provider(backend).complete(HISTORY, CancellationToken())

        assert backend.requests[0] == {"content": "user: Hello\nassistant: Hi there\nuser: How are you?"}

    def test_flatten_history_empty(self):
        """Test an empty history flattens to an empty string."""
        assert flatten_history([]) == ""

    async def test_server_error_maps_to_upstream(self):
        """Test a 5xx answer raises UpstreamServerError."""
        provider = scripted_provider(ScriptedBackend(500))

        with pytest.raises(UpstreamServerError) as exc_info:
            await provider.complete(HISTORY, CancellationToken())

        assert exc_info.value.details["status_code"] == 500
        assert "mock-llm error" in exc_info.value.message

    async def test_client_error_maps_to_provider_error(self):
        """Test a 4xx answer is a terminal provider error."""
        provider = scripted_provider(ScriptedBackend(400))

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete(HISTORY, CancellationToken())

        assert not isinstance(exc_info.value, UpstreamServerError)

    async def test_malformed_body(self):
        """Test a 2xx answer without a completion is a provider error."""
        provider = scripted_provider(ScriptedBackend("malformed"))

        with pytest.raises(ProviderError) as exc_info:
            await provider.complete(HISTORY, CancellationToken())

        assert "malformed" in exc_info.value.message

    async def test_non_text_completion(self):
        """Test a non-string completion is rejected."""

        def handler(request):
            return httpx.Response(200, json={"completion": 42})

        provider = MockCompletionProvider("http://mock-llm", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderError):
            await provider.complete(HISTORY, CancellationToken())

    async def test_hang_times_out(self):
        """Test a backend that never answers raises a timeout at the deadline."""
        provider = scripted_provider(ScriptedBackend("hang"), timeout=0.05)
        started = time.monotonic()

        with pytest.raises(ProviderTimeoutError):
            await provider.complete(HISTORY, CancellationToken())

        assert time.monotonic() - started < 1.0

    async def test_unreachable_backend(self, unreachable_transport):
        """Test a refused connection raises ProviderUnavailableError."""
        provider = MockCompletionProvider("http://mock-llm", transport=unreachable_transport)

        with pytest.raises(ProviderUnavailableError):
            await provider.complete(HISTORY, CancellationToken())

    async def test_transport_timeout(self):
        """Test an httpx timeout maps to ProviderTimeoutError."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = MockCompletionProvider("http://mock-llm", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderTimeoutError):
            await provider.complete(HISTORY, CancellationToken())

    async def test_cancel_abandons_call(self):
        """Test cancellation aborts an in-flight call promptly."""
        provider = scripted_provider(ScriptedBackend("hang"), timeout=10.0)
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)

        with pytest.raises(RequestAbortedError):
            await provider.complete(HISTORY, token)

    async def test_cancelled_token_skips_call(self):
        """Test no request is made once the token has fired."""
        backend = ScriptedBackend()
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RequestAbortedError):
            await scripted_provider(backend).complete(HISTORY, token)

        assert backend.calls == 0


class TestOllamaCompletionProvider:
    """Test cases for OllamaCompletionProvider."""

    async def test_complete_posts_chat_request(self):
        """Test the chat API payload and reply extraction."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"message": {"role": "assistant", "content": "Hey"}})

        reply = await ollama_provider(handler).complete(HISTORY, CancellationToken())

        assert reply == "Hey"
        assert seen["path"] == "/api/chat"
        assert seen["body"]["model"] == "llama3"
        assert seen["body"]["stream"] is False
        assert seen["body"]["messages"][0] == {"role": "user", "content": "Hello"}
        assert len(seen["body"]["messages"]) == 3

    async def test_missing_model_is_unavailable(self):
        """Test a 404 means the model is not ready yet."""

        def handler(request):
            return httpx.Response(404, json={"error": "model 'llama3' not found"})

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await ollama_provider(handler).complete(HISTORY, CancellationToken())

        assert "llama3" in exc_info.value.message

    async def test_server_error_is_upstream(self):
        """Test a 5xx is retryable and hints at loading or resources."""

        def handler(request):
            return httpx.Response(503, text="overloaded")

        with pytest.raises(UpstreamServerError) as exc_info:
            await ollama_provider(handler).complete(HISTORY, CancellationToken())

        assert "overloaded" in exc_info.value.message

    async def test_bad_request_is_terminal(self):
        """Test other statuses are terminal provider errors."""

        def handler(request):
            return httpx.Response(400, json={"error": "invalid"})

        with pytest.raises(ProviderError) as exc_info:
            await ollama_provider(handler).complete(HISTORY, CancellationToken())

        assert exc_info.value.error_code == "PROVIDER_ERROR"

    async def test_malformed_body(self):
        """Test a reply without message content is a provider error."""

        def handler(request):
            return httpx.Response(200, json={"done": True})

        with pytest.raises(ProviderError):
            await ollama_provider(handler).complete(HISTORY, CancellationToken())


class TestProviderFactory:
    """Test cases for create_completion_provider."""

    def test_mock_provider(self):
        """Test the mock selector builds the mock provider."""
        provider = create_completion_provider(
            Settings(llm_provider="mock", mock_llm_base_url="http://stub:9000/", llm_request_timeout=3)
        )

        assert isinstance(provider, MockCompletionProvider)
        assert provider.base_url == "http://stub:9000"
        assert provider.timeout == 3

    def test_ollama_provider(self):
        """Test the ollama selector builds the Ollama provider with its model."""
        provider = create_completion_provider(Settings(llm_provider="OLLAMA", ollama_model="mistral"))

        assert isinstance(provider, OllamaCompletionProvider)
        assert provider.model == "mistral"

    def test_ollama_requires_model(self):
        """Test an empty model is a configuration error."""
        with pytest.raises(ProviderConfigurationError):
            create_completion_provider(Settings(llm_provider="ollama", ollama_model=""))

    def test_unknown_selector(self):
        """Test an unknown selector is a configuration error."""
        settings = Settings().model_copy(update={"llm_provider": "gpt"})

        with pytest.raises(ProviderConfigurationError) as exc_info:
            create_completion_provider(settings)

        assert "gpt" in exc_info.value.message
