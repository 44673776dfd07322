# tts.py - Text-to-Speech Synthesis using Cartesia API
"""
This module implements text-to-speech functionality using Cartesia's streaming TTS service.

The CartesiaTTS provider synthesizes one text unit per request and streams the
raw audio back as it is produced, so playback of a reply can begin while the
rest of it is still being generated.

SentenceChunker optionally groups reply deltas into sentences before synthesis,
trading a little latency for more natural prosody.
"""

import logging
from typing import AsyncIterator, List, Optional

from cartesia import AsyncCartesia

from circuit import ConnectionState
from components import Provider, ProviderKind

logger = logging.getLogger(__name__)

SENTENCE_ENDINGS = ('.', '!', '?', '。', '！', '？')


class SentenceChunker:
    """
    Accumulates text deltas and releases them at sentence boundaries.

    A unit is released once the buffer ends with sentence-ending punctuation
    and holds at least `min_chars` characters; whatever is left is released by
    `flush()` at the end of the reply.
    """

    def __init__(self, min_chars: int = 50):
        self.min_chars = min_chars
        self.buffer = ""

    def feed(self, text: str) -> List[str]:
        self.buffer += text
        if self._should_send(self.buffer):
            return [self.flush()]
        return []

    def flush(self) -> Optional[str]:
        text, self.buffer = self.buffer.strip(), ""
        return text or None

    def _should_send(self, text: str) -> bool:
        """
        Determine if accumulated text should be sent for synthesis.

        Args:
            text: The accumulated text buffer

        Returns:
            bool: True if text should be synthesized now
        """
        stripped = text.rstrip()
        return len(stripped) >= self.min_chars and stripped.endswith(SENTENCE_ENDINGS)


class CartesiaTTS(Provider):
    """
    Cartesia-powered Text-to-Speech synthesis provider.

    One stream_request call synthesizes one text unit (a response chunk or a
    sentence) over its own WebSocket and yields raw pcm_f32le audio as it
    arrives, so playback can start before the unit is fully rendered.
    """

    kind = ProviderKind.SYNTHESIS

    def __init__(self,
                 api_key: str,
                 model_id: str = "sonic-2",
                 voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091",
                 sample_rate: int = 24000):
        """
        Initialize the Cartesia TTS provider.

        Args:
            api_key: Cartesia API key
            model_id: Cartesia TTS model
            voice_id: Cartesia voice ID for synthesis
            sample_rate: Output audio sample rate in Hz (24kHz for high quality)
        """
        self.name = f"cartesia:{model_id}"
        self.api_key = api_key
        self.model_id = model_id
        self.voice_id = voice_id
        self.sample_rate = sample_rate
        self.client: Optional[AsyncCartesia] = None

    async def start(self) -> None:
        if self.client is None:
            self.client = AsyncCartesia(api_key=self.api_key)
            logger.info("[TTS] Initialized with model: %s, voice: %s", self.model_id, self.voice_id)

    async def stop(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None

    def status(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self.client else ConnectionState.DISCONNECTED

    async def stream_request(self, payload: str) -> AsyncIterator[bytes]:
        """
        Synthesize one text unit.

        Args:
            payload: Text to speak

        Yields:
            bytes: Audio chunks in PCM float32 little-endian format
        """
        ws = await self.client.tts.websocket()
        try:
            async for output in await ws.send(
                model_id=self.model_id,
                transcript=payload,
                voice={"id": self.voice_id},
                stream=True,
                output_format={
                    "container": "raw",
                    "encoding": "pcm_f32le",
                    "sample_rate": self.sample_rate,
                },
            ):
                if output.audio:
                    yield output.audio
            logger.debug("[TTS] Synthesized: '%s'", payload)
        finally:
            await ws.close()
