"""Shared fakes and fixtures for the voice pipeline tests."""

import asyncio
import time
from typing import Any, Callable, List, Optional

import pytest
import pytest_asyncio

from circuit import ConnectionState
from components import (AudioSink, AudioSource, Provider, ProviderKind, VadEvent, VadEventType,
                        VoiceActivityDetector, WakeWordDetector, WakeWordEvent)
from config import AudioConfig, CaptureConfig, PipelineConfig, ProviderPolicy
from events import EventBus
from frames import AudioFrame, TranscriptChunk
from orchestrator import VoicePipeline
from providers import ProviderManager

FRAME_SAMPLES = 512
SAMPLE_RATE = 16000


def make_frame(seq: int, amplitude: int = 0, samples: int = FRAME_SAMPLES) -> AudioFrame:
    pcm = int(amplitude).to_bytes(2, "little", signed=True) * samples
    return AudioFrame(seq=seq, timestamp=time.monotonic(), pcm=pcm, sample_rate=SAMPLE_RATE)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` until it holds or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(0.002)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ----------------------------------------------------------------------
# Providers
# ----------------------------------------------------------------------

class ScriptedProvider(Provider):
    """
    Provider that replays `outputs` for every request.

    `fail_times` requests fail before any output; `fail_after` chunks are
    delivered before a mid-stream failure. `first_delay`/`delay` slow the
    stream down to exercise timeouts and pipelining.
    """

    def __init__(self, kind: ProviderKind, name: str = "fake", outputs=(),
                 fail_times: int = 0, fail_after: Optional[int] = None,
                 first_delay: float = 0.0, delay: float = 0.0,
                 start_error: Optional[Exception] = None):
        self.kind = ProviderKind(kind)
        self.name = name
        self.outputs = list(outputs)
        self.fail_times = fail_times
        self.fail_after = fail_after
        self.first_delay = first_delay
        self.delay = delay
        self.start_error = start_error
        self.started = False
        self.requests: List[Any] = []
        self.request_times: List[float] = []
        self.closed_streams = 0
        self._connected = False

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self._connected = True

    async def stop(self) -> None:
        self._connected = False

    def status(self) -> ConnectionState:
        return ConnectionState.CONNECTED if self._connected else ConnectionState.DISCONNECTED

    async def stream_request(self, payload):
        self.requests.append(payload)
        self.request_times.append(time.monotonic())
        try:
            if self.first_delay:
                await asyncio.sleep(self.first_delay)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ConnectionError(f"{self.name} unavailable")
            for index, item in enumerate(self.outputs):
                if self.fail_after is not None and index == self.fail_after:
                    raise ConnectionError(f"{self.name} dropped the stream")
                if self.delay and index:
                    await asyncio.sleep(self.delay)
                yield item
        finally:
            self.closed_streams += 1


def transcription_provider(text: str = "what time is it", **kwargs) -> ScriptedProvider:
    outputs = [TranscriptChunk(text.split()[0]), TranscriptChunk(text, is_final=True)] if text else []
    return ScriptedProvider(ProviderKind.TRANSCRIPTION, outputs=outputs, **kwargs)


def generation_provider(chunks=("It's", " 3", " PM."), **kwargs) -> ScriptedProvider:
    return ScriptedProvider(ProviderKind.GENERATION, outputs=chunks, **kwargs)


class EchoSynthesis(ScriptedProvider):
    """Synthesis provider returning one audio chunk per text unit."""

    def __init__(self, name: str = "fake-tts", **kwargs):
        super().__init__(ProviderKind.SYNTHESIS, name=name, **kwargs)

    async def stream_request(self, payload):
        self.requests.append(payload)
        self.request_times.append(time.monotonic())
        if self.first_delay:
            await asyncio.sleep(self.first_delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError(f"{self.name} unavailable")
        yield payload.encode("utf-8")


# ----------------------------------------------------------------------
# Audio
# ----------------------------------------------------------------------

class QueueAudioSource(AudioSource):
    """Frames are pushed by the test; feed() returns once they were all handled."""

    def __init__(self):
        self._queue: Optional[asyncio.Queue] = None
        self._seq = 0
        self.fail_next: Optional[Exception] = None

    def _ensure_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def stream_frames(self):
        queue = self._ensure_queue()
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        while True:
            frame = await queue.get()
            try:
                if frame is None:
                    return
                yield frame
            finally:
                queue.task_done()

    async def feed(self, count: int = 1, amplitude: int = 0) -> None:
        queue = self._ensure_queue()
        for _ in range(count):
            queue.put_nowait(make_frame(self._seq, amplitude))
            self._seq += 1
        await queue.join()

    def stop(self) -> None:
        self._ensure_queue().put_nowait(None)


class ScriptedWakeWord(WakeWordDetector):
    """Reports an activation on the next processed frame after fire()."""

    def __init__(self):
        self._pending: Optional[float] = None
        self.processed = 0
        self.closed = False

    def fire(self, confidence: float = 0.95) -> None:
        self._pending = confidence

    def process(self, frame):
        self.processed += 1
        if self._pending is None:
            return None
        confidence, self._pending = self._pending, None
        return WakeWordEvent("computer", confidence, frame.seq)

    def close(self) -> None:
        self.closed = True


class ScriptedVAD(VoiceActivityDetector):
    """Returns queued boundary events, one per processed frame."""

    def __init__(self):
        self._pending: List[VadEventType] = []
        self.resets = 0

    def next(self, *event_types: VadEventType) -> None:
        self._pending.extend(event_types)

    def process(self, frame):
        if not self._pending:
            return None
        return VadEvent(self._pending.pop(0), frame.seq)

    def reset(self) -> None:
        self.resets += 1


class FakeSink(AudioSink):
    """Plays buffers back to back, `play_time` seconds each, on the event loop."""

    def __init__(self, play_time: float = 0.01):
        self.play_time = play_time
        self.enqueued: List[bytes] = []
        self.played: List[bytes] = []
        self.flushes = 0
        self.open_calls = 0
        self.open_error: Optional[Exception] = None
        self.enqueue_error: Optional[Exception] = None
        self._callbacks = []
        self._generation = 0
        self._busy_until = 0.0

    def on_playback_ended(self, callback) -> None:
        self._callbacks.append(callback)

    def open(self) -> None:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error

    def enqueue(self, audio: bytes) -> None:
        if self.enqueue_error is not None:
            raise self.enqueue_error
        self.enqueued.append(audio)
        loop = asyncio.get_running_loop()
        self._busy_until = max(loop.time(), self._busy_until) + self.play_time
        loop.call_at(self._busy_until, self._finish, audio, self._generation)

    def _finish(self, audio: bytes, generation: int) -> None:
        if generation != self._generation:
            return
        self.played.append(audio)
        for callback in self._callbacks:
            callback()

    def flush(self) -> None:
        self.flushes += 1
        self._generation += 1
        self._busy_until = 0.0


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded(bus):
    events = []
    bus.on("*", events.append)
    return events


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        audio=AudioConfig(sample_rate=SAMPLE_RATE, frame_samples=FRAME_SAMPLES),
        capture=CaptureConfig(wake_threshold=0.5, max_speech_seconds=3.0, listen_timeout=1.0),
        policy=ProviderPolicy(failure_threshold=3, cooldown=60.0,
                              transcription_first_chunk_timeout=0.5,
                              generation_first_chunk_timeout=0.5,
                              synthesis_first_chunk_timeout=0.5,
                              chunk_timeout=1.0),
        device_retry_interval=0.02,
    )


class PipelineHarness:
    """A VoicePipeline wired to fakes, plus handles on every fake."""

    def __init__(self, config: PipelineConfig, bus: EventBus,
                 transcription=(), generation=(), synthesis=()):
        self.config = config
        self.bus = bus
        self.source = QueueAudioSource()
        self.wake = ScriptedWakeWord()
        self.vad = ScriptedVAD()
        self.sink = FakeSink()
        policy = config.policy
        self.transcription = ProviderManager(ProviderKind.TRANSCRIPTION, transcription, events=bus,
                                             **policy.for_kind("transcription"))
        self.generation = ProviderManager(ProviderKind.GENERATION, generation, events=bus,
                                          **policy.for_kind("generation"))
        self.synthesis = ProviderManager(ProviderKind.SYNTHESIS, synthesis, events=bus,
                                         **policy.for_kind("synthesis"))
        self.pipeline = VoicePipeline(self.source, self.wake, self.vad, self.sink,
                                      self.transcription, self.generation, self.synthesis,
                                      config=config, events=bus)

    @property
    def state(self):
        return self.pipeline.current_state()

    async def activate(self, confidence: float = 0.95) -> None:
        self.wake.fire(confidence)
        await self.source.feed(1)

    async def speak(self, frames: int = 10) -> None:
        """Speech start, `frames` frames of audio, then speech end."""
        self.vad.next(VadEventType.SPEECH_START)
        await self.source.feed(frames, amplitude=3000)
        self.vad.next(VadEventType.SPEECH_END)
        await self.source.feed(1)


@pytest_asyncio.fixture
async def make_harness(pipeline_config, bus):
    harnesses = []

    async def factory(config: Optional[PipelineConfig] = None, **providers) -> PipelineHarness:
        harness = PipelineHarness(config or pipeline_config, bus, **providers)
        harnesses.append(harness)
        await harness.pipeline.start()
        return harness

    yield factory
    for harness in harnesses:
        await harness.pipeline.stop()
