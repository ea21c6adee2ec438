"""Deterministic mock provider backed by the ``mock_llm`` stub server."""

from collections.abc import Sequence

import httpx

from app.domains.llm.base import CompletionProvider
from app.schemas.chat import HistoryEntry


class MockCompletionProvider(CompletionProvider):
    """Posts the flattened history to ``{base_url}/complete``."""

    name = "mock-llm"

    async def _request(
        self, client: httpx.AsyncClient, history: Sequence[HistoryEntry]
    ) -> httpx.Response:
        return await client.post("/complete", json={"content": flatten_history(history)})

    def _extract_completion(self, data: dict) -> str:
        return data["completion"]


def flatten_history(history: Sequence[HistoryEntry]) -> str:
    """Render history as ``role: content`` lines."""
    return "\n".join(f"{entry.role.value}: {entry.content}" for entry in history)
