# buffers.py - Speech segment assembly with a bounded frame buffer
"""
Collects AudioFrames between VAD boundaries into a single SpeechSegment.

The buffer is a ring of at most `max_frames` frames: when VAD never reports the
end of speech, the oldest frames are evicted instead of growing without bound,
and a `segment_evicted` diagnostic is published (VAD end-of-speech is likely
mistuned). Only one segment can be open at a time.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Tuple

from errors import PipelineError
from events import EventBus, EventType
from frames import AudioFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeechSegment:
    """A finalized utterance, ready for transcription."""
    frames: Tuple[AudioFrame, ...]
    reason: str
    frames_received: int
    evicted: int = 0

    @property
    def duration(self) -> float:
        return sum(f.duration for f in self.frames)

    @property
    def sample_rate(self) -> int:
        return self.frames[0].sample_rate if self.frames else 16000

    def audio_bytes(self) -> bytes:
        return b"".join(f.pcm for f in self.frames)

    def __len__(self) -> int:
        return len(self.frames)


class SpeechSegmentAssembler:
    def __init__(self, max_frames: int, events: Optional[EventBus] = None):
        if max_frames < 1:
            raise ValueError("max_frames must be at least 1")
        self.max_frames = max_frames
        self._events = events
        self._frames: Deque[AudioFrame] = deque(maxlen=max_frames)
        self._open = False
        self._received = 0
        self._evicted = 0

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def frames_received(self) -> int:
        """Frames appended to the open segment, including evicted ones."""
        return self._received

    @property
    def evicted(self) -> int:
        return self._evicted

    def open(self) -> None:
        if self._open:
            raise PipelineError("a speech segment is already open")
        self._reset()
        self._open = True

    def append(self, frame: AudioFrame) -> bool:
        """Add a frame to the open segment. Returns True if a frame was evicted."""
        if not self._open:
            raise PipelineError("no speech segment is open")
        evicting = len(self._frames) == self.max_frames
        self._frames.append(frame)
        self._received += 1
        if not evicting:
            return False

        self._evicted += 1
        if self._evicted == 1:
            logger.warning("Speech segment exceeded %d frames; evicting oldest audio "
                           "(end-of-speech detection may be mistuned)", self.max_frames)
            if self._events:
                self._events.emit(EventType.SEGMENT_EVICTED, max_frames=self.max_frames,
                                  frame_seq=frame.seq)
        return True

    def finalize(self, reason: str = "speech_end") -> SpeechSegment:
        """Close the open segment and hand it over."""
        if not self._open:
            raise PipelineError("no speech segment is open")
        segment = SpeechSegment(frames=tuple(self._frames), reason=reason,
                                frames_received=self._received, evicted=self._evicted)
        self._reset()
        logger.debug("Finalized speech segment: %d frames (%.2fs), reason=%s, evicted=%d",
                     len(segment), segment.duration, reason, segment.evicted)
        return segment

    def discard(self) -> None:
        if self._open:
            logger.debug("Discarding open speech segment (%d frames)", len(self._frames))
        self._reset()

    def _reset(self) -> None:
        self._frames.clear()
        self._open = False
        self._received = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._frames)
