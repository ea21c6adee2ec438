"""Completion provider interface.

Every provider turns an ordered message history into the next assistant
reply and reports failures with the same exception kinds, whatever its
transport:

- ``UpstreamServerError``: the backend reported an internal fault (retryable)
- ``ProviderTimeoutError``: the attempt exceeded its deadline
- ``RequestAbortedError``: the caller's token was cancelled
- ``ProviderUnavailableError``: the backend could not be reached
- ``ProviderError``: anything else, terminal
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

import httpx

from app.exceptions.base import RequestAbortedError
from app.exceptions.llm import (
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    UpstreamServerError,
)
from app.schemas.chat import HistoryEntry
from app.shared.cancellation import CancellationToken, run_cancellable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 12.0


class CompletionProvider(ABC):
    """Base class for completion backends reached over HTTP.

    Subclasses implement ``_request`` and may refine ``_translate_status``.
    The base class enforces the deadline, honours cancellation and maps
    transport errors onto the provider exception kinds.
    """

    name: str = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            base_url: Backend root URL.
            timeout: Wall-clock deadline per attempt in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def complete(self, history: Sequence[HistoryEntry], token: CancellationToken) -> str:
        """Return the assistant reply for ``history``.

        Raises one of the provider exception kinds listed in the module
        docstring. Never returns once ``token`` has been cancelled.
        """
        token.raise_if_cancelled()
        try:
            return await run_cancellable(self._call(history), token, timeout=self.timeout)
        except TimeoutError:
            logger.warning(f"{self.name} completion exceeded {self.timeout}s deadline")
            raise ProviderTimeoutError(
                f"{self.name} did not respond within {self.timeout:g} seconds"
            ) from None
        except RequestAbortedError:
            logger.info(f"{self.name} completion abandoned: {token.reason}")
            raise

    async def _call(self, history: Sequence[HistoryEntry]) -> str:
        try:
            # Timeouts are enforced by complete(); the client must not cut in earlier
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=None, transport=self._transport
            ) as client:
                response = await self._request(client, history)
                if response.is_error:
                    raise self._translate_status(response)
                return self._parse_completion(response)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.name} request timed out") from e
        except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
            logger.error(f"{self.name} unreachable at {self.base_url}: {e}")
            raise ProviderUnavailableError(f"{self.name} is unreachable at {self.base_url}") from e
        except httpx.HTTPError as e:
            logger.error(f"{self.name} transport error: {e!r}")
            raise ProviderError(f"{self.name} request failed: {type(e).__name__}") from e

    @abstractmethod
    async def _request(
        self, client: httpx.AsyncClient, history: Sequence[HistoryEntry]
    ) -> httpx.Response:
        """Send the backend request and return its raw response."""

    @abstractmethod
    def _extract_completion(self, data: dict) -> str:
        """Pull the reply text out of a successful JSON body."""

    def _parse_completion(self, response: httpx.Response) -> str:
        try:
            completion = self._extract_completion(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"{self.name} returned a malformed response") from e
        if not isinstance(completion, str):
            raise ProviderError(f"{self.name} returned a non-text completion")
        return completion

    def _translate_status(self, response: httpx.Response) -> ProviderError:
        """Map an HTTP error status onto a provider exception."""
        detail = error_text(response)
        if response.status_code >= 500:
            return UpstreamServerError(
                f"{self.name} returned {response.status_code}: {detail}",
                details={"status_code": response.status_code},
            )
        return ProviderError(
            f"{self.name} returned {response.status_code}: {detail}",
            details={"status_code": response.status_code},
        )


def error_text(response: httpx.Response, limit: int = 200) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:limit]
    if isinstance(data, dict) and "error" in data:
        return str(data["error"])[:limit]
    return str(data)[:limit]
