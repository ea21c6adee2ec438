"""Stand-in completion backend for local runs and tests.

Run with ``uvicorn mock_llm.server:app --port 8080``. Each ``POST /complete``
call may hang forever, fail with a 500, or answer with a fixed reply after a
random delay, according to ``MOCK_LLM_*`` environment variables.
"""

import asyncio
import logging
import random

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class MockLLMSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MOCK_LLM_", case_sensitive=False, extra="ignore")

    hang_rate: float = Field(default=0.1, ge=0.0, le=1.0, description="Share of calls that never answer")
    error_rate: float = Field(default=0.2, ge=0.0, le=1.0, description="Share of calls that fail with 500")
    fail_first: int = Field(default=0, ge=0, description="Fail this many calls with 500 before anything else")
    min_delay_ms: int = Field(default=500, ge=0)
    max_delay_ms: int = Field(default=2000, ge=0)
    reply: str = Field(default="This is a mock response from a pretend LLM.")
    seed: int | None = Field(default=None, description="Seed for reproducible runs")


class CompletionRequest(BaseModel):
    content: str = ""


class _Behaviour:
    """Per-app mutable state: the random source and the fail-first counter."""

    def __init__(self, settings: MockLLMSettings):
        self.settings = settings
        self.random = random.Random(settings.seed)
        self.calls = 0

    def delay(self) -> float:
        low = self.settings.min_delay_ms
        high = max(low, self.settings.max_delay_ms)
        return self.random.uniform(low, high) / 1000.0


def create_mock_app(settings: MockLLMSettings | None = None) -> FastAPI:
    settings = settings or MockLLMSettings()
    behaviour = _Behaviour(settings)
    app = FastAPI(title="Mock LLM", docs_url=None, redoc_url=None)
    app.state.behaviour = behaviour

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/complete")
    async def complete(request: CompletionRequest):
        behaviour.calls += 1
        call = behaviour.calls

        if call <= settings.fail_first:
            logger.info(f"Call {call}: scripted failure")
            return JSONResponse(status_code=500, content={"error": "mock-llm error"})

        if behaviour.random.random() < settings.hang_rate:
            logger.info(f"Call {call}: hanging")
            await asyncio.Event().wait()

        if behaviour.random.random() < settings.error_rate:
            logger.info(f"Call {call}: random failure")
            return JSONResponse(status_code=500, content={"error": "mock-llm error"})

        logger.info(f"Call {call}: got {len(request.content)} characters")
        await asyncio.sleep(behaviour.delay())
        return {"completion": settings.reply}

    return app


app = create_mock_app()
