# sources.py - Audio Input Sources for the Voice Pipeline
"""
This module implements audio input sources producing AudioFrames.

The main implementation is RealTimeMicrophoneSource which captures audio from
the system microphone using sounddevice and hands it to the pipeline as a
continuous stream of fixed-size, sequence-numbered frames.

Key features:
- Low-latency capture in Porcupine-sized frames (512 samples at 16kHz)
- Cross-platform compatibility via sounddevice
- Thread-safe handoff from the device callback to the asyncio loop
- Bounded backlog: if the consumer stalls, the oldest frames are dropped

WavFileSource replays a mono 16-bit WAV file at real-time pace, which is handy
for reproducing a conversation without a microphone.
"""

import asyncio
import logging
import time
import wave
from pathlib import Path
from typing import AsyncIterator, Optional

import numpy as np
import sounddevice as sd

from components import AudioSource
from errors import AudioDeviceError
from frames import AudioFrame

logger = logging.getLogger(__name__)

# Queued by the stream's finished_callback when capture stops on its own
_STREAM_FINISHED = object()


class RealTimeMicrophoneSource(AudioSource):
    """
    Real-time microphone audio source implementation.

    The audio is captured by sounddevice in its own thread; every block is
    converted to int16 PCM and passed to the event loop with
    call_soon_threadsafe, so the consumer awaits frames instead of polling.
    """

    def __init__(self,
                 sample_rate: int = 16000,
                 channels: int = 1,
                 frame_samples: int = 512,
                 device: Optional[int] = None,
                 max_backlog: int = 200):
        """
        Initialize the real-time microphone source.

        Args:
            sample_rate: Audio sample rate in Hz (16kHz is optimal for speech)
            channels: Number of audio channels (1 for mono)
            frame_samples: Samples per frame handed to the pipeline
            device: Audio device ID (None for system default)
            max_backlog: Frames buffered before the oldest are dropped
        """
        self.sample_rate = sample_rate
        self.channels = channels
        self.frame_samples = frame_samples
        self.device = device
        self.max_backlog = max_backlog

        self.recording = False
        self.stream = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._seq = 0
        self._dropped = 0

        logger.info("Microphone source: %dHz, %dch, %d-sample frames (%.0fms)",
                    sample_rate, channels, frame_samples, frame_samples / sample_rate * 1000)

    def _audio_callback(self, indata, frames, time_info, status):
        """
        Sounddevice input callback, called from the audio thread.

        Args:
            indata: Input audio data as numpy array
            frames: Number of audio frames
            time_info: Time information
            status: Stream status flags
        """
        if status:
            logger.debug("Recording status: %s", status)
        if not self.recording or self._loop is None:
            return

        # Convert from float32 [-1.0, 1.0] to int16 PCM, keeping the first channel
        mono = indata[:, 0] if indata.ndim > 1 else indata
        pcm = (np.clip(mono, -1.0, 1.0) * 32767).astype(np.int16).tobytes()
        self._loop.call_soon_threadsafe(self._push, pcm, time.monotonic())

    def _stream_finished(self):
        """Sounddevice finished callback; also runs when the device goes away."""
        if self.recording and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._push, _STREAM_FINISHED, None)

    def _push(self, pcm: bytes, captured_at: Optional[float]) -> None:
        if self._queue is None:
            return
        if self._queue.qsize() >= self.max_backlog:
            self._queue.get_nowait()
            self._dropped += 1
            if self._dropped % 50 == 1:
                logger.warning("Capture backlog full, dropped %d frames so far", self._dropped)
        self._queue.put_nowait((pcm, captured_at))

    async def stream_frames(self) -> AsyncIterator[AudioFrame]:
        """
        Start recording and stream frames until stop() is called.

        Yields:
            AudioFrame: 16-bit PCM frames

        Raises:
            AudioDeviceError: the input device cannot be opened or fails
        """
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        try:
            self.stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=np.float32,
                callback=self._audio_callback,
                finished_callback=self._stream_finished,
                blocksize=self.frame_samples,
                device=self.device,
                latency='low'  # Optimize for low latency
            )
            self.stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self.stream = None
            raise AudioDeviceError(f"cannot open input device {self.device}: {exc}") from exc

        self.recording = True
        logger.info("Started recording")
        try:
            while self.recording:
                pcm, captured_at = await self._queue.get()
                if pcm is None:
                    break
                if pcm is _STREAM_FINISHED or (self.stream is not None and not self.stream.active):
                    raise AudioDeviceError("input stream stopped unexpectedly")
                yield AudioFrame(seq=self._seq, timestamp=captured_at, pcm=pcm,
                                 sample_rate=self.sample_rate)
                self._seq += 1
        finally:
            self._close_stream()

    def stop(self) -> None:
        """Stop recording; the frame stream ends after the current frame."""
        self.recording = False
        if self._loop is not None and self._queue is not None:
            self._loop.call_soon_threadsafe(self._push, None, None)

    def _close_stream(self):
        self.recording = False
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except sd.PortAudioError as exc:
                logger.debug("Error closing input stream: %s", exc)
            self.stream = None
        logger.info("Recording stopped")


class WavFileSource(AudioSource):
    """Replays a mono 16-bit WAV file as AudioFrames."""

    def __init__(self, path, frame_samples: int = 512, realtime: bool = True, loop: bool = False):
        self.path = Path(path)
        self.frame_samples = frame_samples
        self.realtime = realtime
        self.loop = loop
        self._running = False

    async def stream_frames(self) -> AsyncIterator[AudioFrame]:
        try:
            with wave.open(str(self.path), "rb") as wf:
                if wf.getnchannels() != 1 or wf.getsampwidth() != 2:
                    raise AudioDeviceError(f"{self.path} must be mono 16-bit PCM")
                sample_rate = wf.getframerate()
                raw = wf.readframes(wf.getnframes())
        except (OSError, wave.Error) as exc:
            raise AudioDeviceError(f"cannot read {self.path}: {exc}") from exc

        frame_bytes = self.frame_samples * 2
        frame_duration = self.frame_samples / sample_rate
        self._running = True
        seq = 0
        while self._running:
            for offset in range(0, len(raw) - frame_bytes + 1, frame_bytes):
                if not self._running:
                    return
                yield AudioFrame(seq=seq, timestamp=time.monotonic(),
                                 pcm=raw[offset:offset + frame_bytes], sample_rate=sample_rate)
                seq += 1
                await asyncio.sleep(frame_duration if self.realtime else 0)
            if not self.loop:
                break

    def stop(self) -> None:
        self._running = False
