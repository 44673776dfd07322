# components.py - Abstract interfaces for the voice pipeline collaborators
"""
This module defines the contracts the orchestrator relies on.

The interfaces define the contract for:
- Audio input sources (continuous frame capture)
- Wake-word detectors and voice activity detectors (black-box frame scorers)
- Audio output sinks (the only dependency of the playback queue on a device)
- Providers: one plugin contract for transcription, generation and synthesis
  back-ends, tagged by `kind` rather than specialised by subclassing
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from circuit import ConnectionState
from frames import AudioFrame


class ProviderKind(str, Enum):
    TRANSCRIPTION = "transcription"
    GENERATION = "generation"
    SYNTHESIS = "synthesis"


@dataclass(frozen=True)
class WakeWordEvent:
    """Activation phrase detection."""
    keyword: str
    confidence: float
    frame_seq: int = -1


class VadEventType(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"
    # Hysteresis: silence observed, but still inside the redemption window
    SPEECH_PAUSE = "speech_pause"


@dataclass(frozen=True)
class VadEvent:
    type: VadEventType
    frame_seq: int = -1


class AudioSource(ABC):
    """
    Abstract base class for audio input sources.

    Implementations capture audio from a microphone, a file or a network
    stream and hand it out as fixed-size, sequence-numbered frames.
    """

    @abstractmethod
    def stream_frames(self) -> AsyncIterator[AudioFrame]:
        """
        Stream audio frames for as long as the source is running.

        Yields:
            AudioFrame: 16-bit PCM frames with monotonic sequence numbers

        Raises:
            AudioDeviceError: the capture device is unavailable
        """

    def stop(self) -> None:
        """Stop capturing; the frame stream ends."""


class WakeWordDetector(ABC):
    """Consumes frames and reports activation phrase detections."""

    @abstractmethod
    def process(self, frame: AudioFrame) -> Optional[WakeWordEvent]:
        """Return a WakeWordEvent if the frame completes an activation phrase."""

    def reset(self) -> None:
        pass

    def close(self) -> None:
        pass


class VoiceActivityDetector(ABC):
    """Consumes frames and reports speech boundaries."""

    @abstractmethod
    def process(self, frame: AudioFrame) -> Optional[VadEvent]:
        """Return a boundary event for this frame, if any."""

    @abstractmethod
    def reset(self) -> None:
        """Forget any in-progress speech state."""


class AudioSink(ABC):
    """
    Abstract base class for audio output devices.

    The sink plays whatever it is given in order and reports, through the
    registered callback, each time a previously enqueued buffer has finished
    playing. The callback may be invoked from a device thread.
    """

    @abstractmethod
    def enqueue(self, audio: bytes) -> None:
        """Queue raw audio for playback. Raises AudioDeviceError."""

    @abstractmethod
    def flush(self) -> None:
        """Stop current audio immediately and drop everything queued."""

    @abstractmethod
    def on_playback_ended(self, callback: Callable[[], None]) -> None:
        """Register the callback fired once per enqueued buffer."""

    def open(self) -> None:
        """Acquire the output device. Raises AudioDeviceError."""

    def close(self) -> None:
        """Release the output device."""


class Provider(ABC):
    """
    Plugin contract shared by every transcription, generation and synthesis
    back-end.

    Payload direction depends on `kind`:
    - transcription: bytes (16-bit PCM)       -> TranscriptChunk
    - generation:    GenerationRequest        -> str (reply text deltas)
    - synthesis:     str (text to speak)      -> bytes (audio)
    """

    kind: ProviderKind
    name: str

    @abstractmethod
    async def start(self) -> None:
        """Open the connection/client. Raises on failure."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the connection/client."""

    @abstractmethod
    def status(self) -> ConnectionState:
        """Current connection state."""

    @abstractmethod
    def stream_request(self, payload: Any) -> AsyncIterator[Any]:
        """
        Stream output chunks for one request.

        Implementations are async generators; closing the generator cancels
        the request mid-stream.
        """
