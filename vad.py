# vad.py - Energy based voice activity detection
"""
RMS-threshold voice activity detector with hysteresis.

Speech starts after `min_speech_frames` consecutive loud frames. Once speaking,
silence has to last `redemption_frames` frames before speech ends; the first
quiet frame of a pause is reported as SPEECH_PAUSE so the orchestrator knows
the user is still considered to be speaking.
"""

import logging
import math
from typing import Optional

import numpy as np

from components import VadEvent, VadEventType, VoiceActivityDetector
from frames import AudioFrame

logger = logging.getLogger(__name__)


def frame_rms(pcm: bytes) -> float:
    """RMS level of 16-bit PCM, normalised to 0.0-1.0."""
    samples = np.frombuffer(pcm, dtype=np.int16)
    if samples.size == 0:
        return 0.0
    normalised = samples.astype(np.float32) / 32768.0
    return float(np.sqrt(np.mean(normalised * normalised)))


class EnergyVAD(VoiceActivityDetector):
    def __init__(self, threshold: float = 0.015, min_speech_frames: int = 3, redemption_frames: int = 47):
        self.threshold = threshold
        self.min_speech_frames = max(1, min_speech_frames)
        self.redemption_frames = max(1, redemption_frames)
        self.reset()

    @classmethod
    def for_frames(cls, frame_duration: float, threshold: float = 0.015,
                   min_speech_seconds: float = 0.1, silence_seconds: float = 1.5) -> "EnergyVAD":
        """Build a detector from durations instead of frame counts."""
        return cls(threshold=threshold,
                   min_speech_frames=math.ceil(min_speech_seconds / frame_duration),
                   redemption_frames=math.ceil(silence_seconds / frame_duration))

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def reset(self) -> None:
        self._in_speech = False
        self._loud_run = 0
        self._silent_run = 0

    def process(self, frame: AudioFrame) -> Optional[VadEvent]:
        loud = frame_rms(frame.pcm) >= self.threshold

        if not self._in_speech:
            self._loud_run = self._loud_run + 1 if loud else 0
            if self._loud_run >= self.min_speech_frames:
                self._in_speech = True
                self._silent_run = 0
                return VadEvent(VadEventType.SPEECH_START, frame.seq)
            return None

        if loud:
            self._silent_run = 0
            return None

        self._silent_run += 1
        if self._silent_run >= self.redemption_frames:
            logger.debug("Speech ended after %d silent frames", self._silent_run)
            self.reset()
            return VadEvent(VadEventType.SPEECH_END, frame.seq)
        if self._silent_run == 1:
            return VadEvent(VadEventType.SPEECH_PAUSE, frame.seq)
        return None
