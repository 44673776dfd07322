# audio_player.py - Real-time Audio Playback using SoundDevice
"""
This module implements the speaker side of the voice pipeline.

The SoundDeviceAudioPlayer class provides:
- Real-time streaming playback through a sounddevice output stream
- Per-buffer completion callbacks, so the playback queue knows when each
  synthesized chunk has been played
- Immediate flush for barge-in: queued audio is dropped inside the device
  callback's lock, so no flushed buffer can report completion afterwards
- Underrun accounting for diagnostics

The implementation uses the sounddevice callback thread for playback while
keeping all state changes behind a single lock.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

import numpy as np
import sounddevice as sd

from components import AudioSink
from errors import AudioDeviceError

logger = logging.getLogger(__name__)


class SoundDeviceAudioPlayer(AudioSink):
    """
    Real-time audio sink implementation using sounddevice.

    Input buffers are raw little-endian PCM in `input_format`
    ('pcm_f32le' as produced by Cartesia, or 'pcm_s16le').
    """

    def __init__(self,
                 sample_rate: int = 24000,
                 channels: int = 1,
                 input_format: str = 'pcm_f32le',
                 buffer_size: int = 2048,
                 device: Optional[int] = None):
        """
        Initialize the real-time audio player.

        Args:
            sample_rate: Audio sample rate in Hz
            channels: Number of audio channels (1=mono)
            input_format: Encoding of enqueued buffers
            buffer_size: Size of sounddevice callback buffer
            device: Audio device ID (None for system default)
        """
        if input_format not in ('pcm_f32le', 'pcm_s16le'):
            raise ValueError(f"unsupported input format {input_format}")
        self.sample_rate = sample_rate
        self.channels = channels
        self.input_format = input_format
        self.buffer_size = buffer_size
        self.device = device

        # One [remaining samples] entry per enqueued buffer, oldest first
        self.audio_buffer: Deque[List] = deque()
        self.buffer_lock = threading.Lock()
        self._ended_callbacks: List[Callable[[], None]] = []
        # Trailing bytes of a partial sample, completed by the next buffer
        self._carry = b""

        self.stream = None
        self.total_samples_buffered = 0
        self.underrun_count = 0

        logger.info("Audio player: sample_rate=%d, channels=%d, format=%s, blocksize=%d",
                    sample_rate, channels, input_format, buffer_size)

    def on_playback_ended(self, callback: Callable[[], None]) -> None:
        self._ended_callbacks.append(callback)

    def _audio_callback(self, outdata, frames, time, status):
        """
        Sounddevice output callback, called from the audio thread whenever
        the device needs `frames` more samples.
        """
        if status:
            logger.debug("Output status: %s", status)

        finished = 0
        with self.buffer_lock:
            output_pos = 0
            while output_pos < frames and self.audio_buffer:
                entry = self.audio_buffer[0]
                samples = entry[0]
                take = min(len(samples), frames - output_pos)
                outdata[output_pos:output_pos + take] = samples[:take].reshape(-1, self.channels)
                output_pos += take
                self.total_samples_buffered -= take
                if take == len(samples):
                    self.audio_buffer.popleft()
                    finished += 1
                else:
                    entry[0] = samples[take:]

            if output_pos < frames:
                outdata[output_pos:] = 0
                if output_pos > 0:
                    self.underrun_count += 1

            # Fired under the lock so a concurrent flush() cannot be overtaken
            for _ in range(finished):
                self._fire_ended()

    def _fire_ended(self):
        for callback in self._ended_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Playback-ended callback failed")

    def open(self) -> None:
        """Start the output stream."""
        if self.stream is not None and self.stream.active:
            return
        try:
            self.stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype='float32',
                callback=self._audio_callback,
                blocksize=self.buffer_size,
                device=self.device,
                latency='high'  # Use high latency to reduce buffer underruns
            )
            self.stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self.stream = None
            raise AudioDeviceError(f"cannot open output device {self.device}: {exc}") from exc
        logger.info("Audio stream started with blocksize=%d", self.buffer_size)

    def close(self) -> None:
        """Stop the output stream and drop anything still queued."""
        self.flush()
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except sd.PortAudioError as exc:
                logger.debug("Error closing output stream: %s", exc)
            self.stream = None
            logger.info("Audio stream stopped")

    def enqueue(self, audio: bytes) -> None:
        """Queue one buffer of PCM audio for playback."""
        self.open()
        width = (4 if self.input_format == 'pcm_f32le' else 2) * self.channels
        data = self._carry + audio
        usable = len(data) - len(data) % width
        data, self._carry = data[:usable], data[usable:]
        if self.input_format == 'pcm_f32le':
            samples = np.frombuffer(data, dtype='<f4')
        else:
            samples = np.frombuffer(data, dtype='<i2').astype(np.float32) / 32768.0

        with self.buffer_lock:
            if len(samples) == 0:
                # Nothing to play, but the caller still expects completion
                self._fire_ended()
                return
            self.audio_buffer.append([samples])
            self.total_samples_buffered += len(samples)

    def flush(self) -> None:
        """Immediately clear the buffer; in-flight audio stops at the next callback."""
        with self.buffer_lock:
            self.audio_buffer.clear()
            self.total_samples_buffered = 0
            self._carry = b""

    def get_buffer_info(self) -> dict:
        """
        Get current buffer status information for debugging.

        Returns:
            dict: queued buffers, total samples, buffered duration, stream
                  status and underrun count
        """
        with self.buffer_lock:
            return {
                'buffer_chunks': len(self.audio_buffer),
                'total_samples': self.total_samples_buffered,
                'buffer_duration_ms': self.total_samples_buffered / self.sample_rate * 1000,
                'is_playing': self.stream is not None and self.stream.active,
                'underrun_count': self.underrun_count,
            }
