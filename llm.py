# llm.py
import logging
from typing import AsyncIterator, Optional

from anthropic import AsyncAnthropic

from circuit import ConnectionState
from components import Provider, ProviderKind
from config import DEFAULT_SYSTEM_PROMPT
from frames import GenerationRequest

logger = logging.getLogger(__name__)


class AnthropicLLM(Provider):
    """Streaming reply generation through the Anthropic Messages API."""

    kind = ProviderKind.GENERATION

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514", max_tokens: int = 1024):
        """
        :param api_key: Anthropic API key
        :param model: Anthropic model name
        :param max_tokens: reply length cap; voice replies should stay short
        """
        self.name = f"anthropic:{model}"
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.client: Optional[AsyncAnthropic] = None

    async def start(self) -> None:
        if self.client is None:
            self.client = AsyncAnthropic(api_key=self.api_key)
            logger.info("[LLM] Initialized with model: %s", self.model)

    async def stop(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None

    def status(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self.client else ConnectionState.DISCONNECTED

    async def stream_request(self, payload: GenerationRequest) -> AsyncIterator[str]:
        """Stream reply text deltas for one user utterance."""
        messages = payload.messages()
        logger.debug("[LLM] Sending to Anthropic: '%s' (history: %d messages)",
                     payload.text, len(messages) - 1)

        async with self.client.messages.stream(
            model=self.model,
            max_tokens=self.max_tokens,
            system=payload.system_prompt or DEFAULT_SYSTEM_PROMPT,
            messages=messages,
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text
