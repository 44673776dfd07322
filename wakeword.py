# wakeword.py - Porcupine activation phrase detector
"""
Adapter around Picovoice Porcupine.

Porcupine consumes fixed `frame_length` blocks of 16 kHz int16 samples; incoming
AudioFrames are re-chunked to that size, so any capture frame size works.
Porcupine's detections are binary, so every detection is reported with a fixed
high confidence.
"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pvporcupine

from components import WakeWordDetector, WakeWordEvent
from errors import ConfigurationError
from frames import AudioFrame

logger = logging.getLogger(__name__)

DETECTION_CONFIDENCE = 0.99


class PorcupineWakeWord(WakeWordDetector):
    def __init__(self, access_key: str, keyword: str = "porcupine", sensitivity: float = 0.5):
        """
        Args:
            access_key: Picovoice access key
            keyword: A built-in keyword name or a path to a custom .ppn model
            sensitivity: Detection sensitivity, 0.0-1.0 (higher = more detections)
        """
        self.keyword = keyword
        try:
            if keyword.endswith(".ppn"):
                model_path = Path(keyword).expanduser()
                if not model_path.exists():
                    raise ConfigurationError(f"wake word model not found: {model_path}")
                self._porcupine = pvporcupine.create(access_key=access_key,
                                                     keyword_paths=[str(model_path)],
                                                     sensitivities=[sensitivity])
                self.keyword = model_path.stem
            else:
                self._porcupine = pvporcupine.create(access_key=access_key, keywords=[keyword],
                                                     sensitivities=[sensitivity])
        except (pvporcupine.PorcupineError, ValueError) as exc:
            raise ConfigurationError(f"cannot initialise Porcupine for '{keyword}': {exc}") from exc

        self.frame_length = self._porcupine.frame_length
        self.sample_rate = self._porcupine.sample_rate
        self._pending = np.zeros(0, dtype=np.int16)
        logger.info("Porcupine initialized keyword=%s sensitivity=%.2f frame_length=%d",
                    self.keyword, sensitivity, self.frame_length)

    def process(self, frame: AudioFrame) -> Optional[WakeWordEvent]:
        samples = np.frombuffer(frame.pcm, dtype=np.int16)
        self._pending = np.concatenate((self._pending, samples))
        detected = False
        while len(self._pending) >= self.frame_length:
            block = self._pending[:self.frame_length]
            self._pending = self._pending[self.frame_length:]
            if self._porcupine.process(block.tolist()) >= 0:
                detected = True
        if detected:
            self._pending = np.zeros(0, dtype=np.int16)
            return WakeWordEvent(self.keyword, DETECTION_CONFIDENCE, frame.seq)
        return None

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.int16)

    def close(self) -> None:
        if self._porcupine is not None:
            self._porcupine.delete()
            self._porcupine = None
