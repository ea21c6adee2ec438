# python
# app/core/config.py
"""Configuration settings for the Mini Chat API.

Uses Pydantic BaseSettings for environment variable management.
"""
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentEnum(str, Enum):
    development = "development"
    testing = "testing"
    staging = "staging"
    production = "production"


class LogLevelEnum(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormatEnum(str, Enum):
    simple = "simple"
    json = "json"


class LLMProviderEnum(str, Enum):
    mock = "mock"
    ollama = "ollama"


class Settings(BaseSettings):
    # Pydantic v2 settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Application Settings =====
    app_name: str = Field(default="Mini Chat API", description="Application name")
    environment: EnvironmentEnum = Field(
        default=EnvironmentEnum.development, description="Environment type"
    )
    debug: bool = Field(default=False, description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # ===== Database Settings =====
    database_url: str | None = Field(default=None, description="Database connection URL")
    test_database_url: str | None = Field(default=None, description="Test database URL")

    # ===== Completion Provider =====
    llm_provider: LLMProviderEnum = Field(
        default=LLMProviderEnum.mock, description="Completion backend (mock or ollama)"
    )
    mock_llm_base_url: str = Field(
        default="http://mock-llm:8080", description="Base URL of the mock completion stub"
    )
    ollama_base_url: str = Field(
        default="http://ollama:11434", description="Base URL of the Ollama server"
    )
    ollama_model: str = Field(default="llama3", description="Ollama model identifier")
    llm_request_timeout: float = Field(
        default=12.0, description="Wall-clock deadline per completion attempt in seconds"
    )
    llm_max_retries: int = Field(
        default=2, description="Retries after the first attempt on upstream server errors"
    )
    llm_retry_base_delay_ms: int = Field(
        default=500, description="Backoff unit; attempt N waits N times this value"
    )
    client_retry_after_ms: int = Field(
        default=1000, description="Suggested client back-off for retryable error responses"
    )

    # ===== Pagination =====
    default_page_limit: int = Field(default=20, description="Default message page size")
    max_page_limit: int = Field(default=100, description="Maximum message page size")

    # ===== CORS Settings =====
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000",
        description="Allowed CORS origins (comma-separated)",
    )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    # ===== Monitoring & Logging =====
    log_level: LogLevelEnum = Field(default=LogLevelEnum.INFO, description="Logging level")
    log_format: LogFormatEnum = Field(default=LogFormatEnum.simple, description="Log format")

    # ===== Server Settings =====
    host: str = Field(default="127.0.0.1", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")

    # ===== Computed Properties =====
    @property
    def is_development(self) -> bool:
        return self.environment == EnvironmentEnum.development

    @property
    def is_production(self) -> bool:
        return self.environment == EnvironmentEnum.production

    @property
    def is_testing(self) -> bool:
        return self.environment == EnvironmentEnum.testing

    @property
    def llm_retry_base_delay(self) -> float:
        return self.llm_retry_base_delay_ms / 1000.0

    # ===== Validation Methods =====
    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        if v and isinstance(v, str):
            lv = v.lower()
            if lv in ["dev", "develop"]:
                return "development"
            if lv in ["prod"]:
                return "production"
            return lv
        return v

    @field_validator("llm_provider", mode="before")
    @classmethod
    def validate_llm_provider(cls, v):
        if v and isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("llm_request_timeout")
    @classmethod
    def validate_request_timeout(cls, v):
        if v <= 0:
            raise ValueError("LLM request timeout must be positive")
        return v

    @field_validator("llm_max_retries", "llm_retry_base_delay_ms", "client_retry_after_ms")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator("max_page_limit")
    @classmethod
    def validate_max_page_limit(cls, v):
        if v > 1000:
            raise ValueError("Maximum page limit cannot exceed 1000")
        return v


settings = Settings()


class ConfigValidator:
    @staticmethod
    def validate_required_settings():
        errors = []
        if not settings.database_url:
            errors.append("DATABASE_URL is required")
        if settings.llm_provider == LLMProviderEnum.ollama and not settings.ollama_model:
            errors.append("OLLAMA_MODEL is required when LLM_PROVIDER=ollama")
        if settings.default_page_limit > settings.max_page_limit:
            errors.append("DEFAULT_PAGE_LIMIT cannot exceed MAX_PAGE_LIMIT")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    @staticmethod
    def get_feature_status() -> dict:
        return {
            "llm_provider": settings.llm_provider.value,
            "llm_request_timeout": settings.llm_request_timeout,
            "llm_max_retries": settings.llm_max_retries,
            "environment": settings.environment,
        }


def get_config_summary() -> dict:
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "environment": settings.environment,
        "debug": settings.debug,
        "features": ConfigValidator.get_feature_status(),
        "database_configured": bool(settings.database_url),
    }


__all__ = [
    "settings",
    "Settings",
    "ConfigValidator",
    "get_config_summary",
    "EnvironmentEnum",
    "LogLevelEnum",
    "LogFormatEnum",
    "LLMProviderEnum",
]
