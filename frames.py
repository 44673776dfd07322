"""Typed, immutable units that flow between pipeline stages."""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class AudioFrame:
    """Fixed-duration block of 16-bit mono PCM from the capture device."""
    seq: int
    timestamp: float  # time.monotonic() at capture
    pcm: bytes
    sample_rate: int = 16000

    @property
    def samples(self) -> int:
        return len(self.pcm) // 2

    @property
    def duration(self) -> float:
        return self.samples / self.sample_rate


@dataclass(frozen=True)
class TranscriptChunk:
    """Partial or final transcription result."""
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class GenerationRequest:
    """User utterance plus prior conversation, as sent to a generation provider."""
    text: str
    history: Tuple[Dict[str, str], ...] = ()
    system_prompt: str = ""

    def messages(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self.history] + [{"role": "user", "content": self.text}]


@dataclass(frozen=True)
class ResponseChunk:
    """Streamed reply text belonging to one Turn."""
    turn_id: str
    seq: int
    text: str


@dataclass(frozen=True)
class SynthesisChunk:
    """Streamed synthesized audio belonging to one Turn."""
    turn_id: str
    seq: int
    audio: bytes = field(repr=False)
