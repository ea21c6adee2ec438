"""Build the configured completion provider once at startup."""

import logging

from app.core.config import LLMProviderEnum, Settings
from app.domains.llm.base import CompletionProvider
from app.domains.llm.mock import MockCompletionProvider
from app.domains.llm.ollama import OllamaCompletionProvider
from app.exceptions.llm import ProviderConfigurationError

logger = logging.getLogger(__name__)


def create_completion_provider(settings: Settings) -> CompletionProvider:
    """Return the provider selected by ``LLM_PROVIDER``.

    Raises:
        ProviderConfigurationError: The selector is not a known provider.
    """
    try:
        provider = LLMProviderEnum(settings.llm_provider)
    except ValueError:
        raise ProviderConfigurationError(
            f"Unknown LLM_PROVIDER: {settings.llm_provider}",
            details={"allowed": [p.value for p in LLMProviderEnum]},
        ) from None

    if provider == LLMProviderEnum.mock:
        logger.info(f"Using mock completion provider at {settings.mock_llm_base_url}")
        return MockCompletionProvider(settings.mock_llm_base_url, timeout=settings.llm_request_timeout)

    if provider == LLMProviderEnum.ollama:
        if not settings.ollama_model:
            raise ProviderConfigurationError("OLLAMA_MODEL must be set when LLM_PROVIDER=ollama")
        logger.info(
            f"Using Ollama completion provider at {settings.ollama_base_url} "
            f"with model {settings.ollama_model}"
        )
        return OllamaCompletionProvider(
            settings.ollama_base_url,
            settings.ollama_model,
            timeout=settings.llm_request_timeout,
        )

    raise ProviderConfigurationError(f"Unsupported LLM_PROVIDER: {provider.value}")
