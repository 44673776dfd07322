# asr.py - Automatic Speech Recognition using Cartesia API
"""
This module implements speech recognition using Cartesia's streaming ASR service.

The CartesiaASR provider transcribes one finalized speech segment per request:
- the segment's PCM is streamed to the STT WebSocket in small chunks
- partial results are yielded as they arrive for real-time feedback
- final results are yielded as is_final chunks; the request ends when the
  service reports 'done'

The implementation uses Cartesia's "ink-whisper" model, which is based on
OpenAI's Whisper but optimized for real-time streaming applications.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from cartesia import AsyncCartesia

from circuit import ConnectionState
from components import Provider, ProviderKind
from frames import TranscriptChunk

logger = logging.getLogger(__name__)


class CartesiaASR(Provider):
    """
    Cartesia-powered Automatic Speech Recognition provider.

    Features:
    - Streaming upload of a speech segment over WebSocket
    - Partial and final transcription results
    - Word-level timing information logged at debug level
    """

    kind = ProviderKind.TRANSCRIPTION

    def __init__(self,
                 api_key: str,
                 model: str = "ink-whisper",
                 language: str = "en",
                 sample_rate: int = 16000,
                 send_chunk_bytes: int = 3200):
        """
        Initialize the Cartesia ASR provider.

        Args:
            api_key: Cartesia API key
            model: Cartesia STT model
            language: Transcription language code
            sample_rate: Sample rate of the 16-bit PCM being sent
            send_chunk_bytes: Bytes per WebSocket message (100ms at 16kHz)
        """
        self.name = f"cartesia:{model}"
        self.api_key = api_key
        self.model = model
        self.language = language
        self.sample_rate = sample_rate
        self.send_chunk_bytes = send_chunk_bytes
        self.client: Optional[AsyncCartesia] = None

    async def start(self) -> None:
        if self.client is None:
            self.client = AsyncCartesia(api_key=self.api_key)
            logger.info("[ASR] Initialized with model: %s (%s)", self.model, self.language)

    async def stop(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None

    def status(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self.client else ConnectionState.DISCONNECTED

    async def stream_request(self, payload: bytes) -> AsyncIterator[TranscriptChunk]:
        """
        Transcribe one speech segment.

        Args:
            payload: 16-bit little-endian mono PCM

        Yields:
            TranscriptChunk: partial results, then final results
        """
        # Establish WebSocket connection to Cartesia ASR service
        ws = await self.client.stt.websocket(
            model=self.model,
            language=self.language,
            encoding="pcm_s16le",          # 16-bit PCM little-endian format
            sample_rate=self.sample_rate,
        )

        async def sender():
            """Upload the segment, then ask the service to flush and finish."""
            for offset in range(0, len(payload), self.send_chunk_bytes):
                await ws.send(payload[offset:offset + self.send_chunk_bytes])
            await ws.send("finalize")
            await ws.send("done")

        sender_task = asyncio.create_task(sender())
        try:
            async for result in ws.receive():
                if result['type'] == 'transcript':
                    text = result['text'].strip()
                    is_final = result.get('is_final', False)

                    if is_final and result.get('words'):
                        for word_info in result['words']:
                            logger.debug("  '%s': %.2fs - %.2fs",
                                         word_info['word'], word_info['start'], word_info['end'])

                    # Only forward non-empty text
                    if text:
                        yield TranscriptChunk(text=text, is_final=is_final)
                elif result['type'] == 'done':
                    # ASR session completed
                    break
                elif result['type'] == 'error':
                    raise RuntimeError(f"Cartesia STT error: {result.get('message', result)}")

            # Surface upload errors instead of losing them with the task
            await sender_task
        finally:
            if not sender_task.done():
                sender_task.cancel()
            await ws.close()
