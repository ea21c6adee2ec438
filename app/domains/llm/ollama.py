"""Local-model provider using the Ollama chat API."""

from collections.abc import Sequence

import httpx

from app.domains.llm.base import DEFAULT_TIMEOUT, CompletionProvider, error_text
from app.exceptions.llm import ProviderError, ProviderUnavailableError, UpstreamServerError
from app.schemas.chat import HistoryEntry


class OllamaCompletionProvider(CompletionProvider):
    """Posts the history to ``{base_url}/api/chat`` without streaming."""

    name = "ollama"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.model = model

    async def _request(
        self, client: httpx.AsyncClient, history: Sequence[HistoryEntry]
    ) -> httpx.Response:
        payload = {
            "model": self.model,
            "messages": [{"role": entry.role.value, "content": entry.content} for entry in history],
            "stream": False,
        }
        return await client.post("/api/chat", json=payload)

    def _extract_completion(self, data: dict) -> str:
        return data["message"]["content"]

    def _translate_status(self, response: httpx.Response) -> ProviderError:
        status_code = response.status_code
        detail = error_text(response)
        if status_code == 404:
            # Ollama answers 404 while the model is still being pulled
            return ProviderUnavailableError(
                f'Ollama model "{self.model}" not found; it may still be downloading',
                details={"status_code": status_code, "model": self.model},
            )
        if status_code >= 500:
            return UpstreamServerError(
                f"Ollama returned {status_code}: {detail}. The model may still be loading "
                "or the server may be out of resources",
                details={"status_code": status_code, "model": self.model},
            )
        return ProviderError(
            f"Ollama returned {status_code}: {detail}",
            details={"status_code": status_code, "model": self.model},
        )
