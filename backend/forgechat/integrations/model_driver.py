"""Model driver abstraction shared by every LLM vendor integration.

A driver turns a role-tagged message list into either a complete reply
(``generate``) or a stream of ``StreamChunk`` objects (``generate_stream``).
Streams always end with exactly one chunk where ``finished`` is true; that
chunk carries usage and finish reason, or ``error`` when the upstream call
failed. Adapting the role-tagged list to a vendor wire format is the
driver's job.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from forgechat.core.config import settings
from forgechat.core.logging import mask_api_key

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_SEC = 10


class ModelDriverError(Exception):
    pass


class ChatMessage(BaseModel):
    role: str  # system, user, assistant
    content: str


class GenerateOptions(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None


class ChatResponse(BaseModel):
    content: str
    token_count: int = 0
    finish_reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class StreamChunk(BaseModel):
    content: str = ""  # cumulative text so far
    delta: str = ""
    finished: bool = False
    token_count: int = 0
    finish_reason: str = ""
    error: str | None = None


class ModelDriver(ABC):
    provider: str = ""

    def __init__(self, model: str, temperature: float = 0.0, max_tokens: int = 0):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @abstractmethod
    async def generate(
        self, messages: list[ChatMessage], options: GenerateOptions | None = None
    ) -> ChatResponse:
        """Return a complete reply. Raises ``ModelDriverError`` on failure."""

    @abstractmethod
    def generate_stream(
        self, messages: list[ChatMessage], options: GenerateOptions | None = None
    ) -> AsyncIterator[StreamChunk]:
        """Yield incremental chunks, ending with a single finished chunk."""

    def _resolve(self, options: GenerateOptions | None) -> tuple[float | None, int]:
        options = options or GenerateOptions()
        temperature = options.temperature if options.temperature is not None else self.temperature
        max_tokens = options.max_tokens or self.max_tokens
        return (temperature if temperature and temperature > 0 else None), max_tokens

    async def health_check(self) -> None:
        await asyncio.wait_for(
            self.generate(
                [ChatMessage(role="user", content="hello")],
                GenerateOptions(max_tokens=10),
            ),
            timeout=HEALTH_CHECK_TIMEOUT_SEC,
        )


_driver: ModelDriver | None = None


def create_model_driver() -> ModelDriver:
    provider = settings.llm_provider.lower()
    if provider in ("anthropic", "claude"):
        from forgechat.integrations.anthropic_client import AnthropicDriver

        driver: ModelDriver = AnthropicDriver(
            api_key=settings.anthropic_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url or None,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_sec,
        )
        api_key = settings.anthropic_api_key
    elif provider == "openai":
        from forgechat.integrations.openai_client import OpenAIDriver

        driver = OpenAIDriver(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url or None,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_sec,
        )
        api_key = settings.openai_api_key
    else:
        raise ModelDriverError(f"unsupported AI provider: {settings.llm_provider}")

    logger.info(
        "Model driver ready: provider=%s model=%s api_key=%s",
        driver.provider, driver.model, mask_api_key(api_key),
    )
    return driver


def get_model_driver() -> ModelDriver:
    global _driver
    if _driver is None:
        _driver = create_model_driver()
    return _driver
