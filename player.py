# player.py - Turn-tagged, strictly ordered playback queue
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from components import AudioSink
from errors import AudioDeviceError
from frames import SynthesisChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _EndOfTurn:
    turn_id: str


class PlaybackQueue:
    """
    Plays SynthesisChunks in FIFO order through an AudioSink.

    Every chunk carries its Turn id. Only chunks of the current Turn are
    accepted or played; `flush()` stops the audio in the sink, drops everything
    queued and forgets the current Turn, so nothing from an interrupted Turn
    can reach the speaker afterwards.

    Up to `lookahead` chunks are handed to the sink ahead of the one playing,
    so consecutive chunks play back to back. The sink reports the end of each
    buffer in order; that is how chunks are marked played.

    Any exception from the sink flushes the queue and is passed to `on_error`;
    the queue itself keeps running.
    """

    def __init__(self,
                 sink: AudioSink,
                 *,
                 on_chunk_started: Optional[Callable[[SynthesisChunk], None]] = None,
                 on_chunk_played: Optional[Callable[[SynthesisChunk], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 lookahead: int = 1):
        self._sink = sink
        self._on_chunk_started = on_chunk_started
        self._on_chunk_played = on_chunk_played
        self._on_error = on_error
        self.lookahead = lookahead
        self._queue: Optional[asyncio.Queue] = None
        self._changed: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._current_turn: Optional[str] = None
        self._waiters: Dict[str, asyncio.Future] = {}
        self._in_flight: Deque[SynthesisChunk] = deque()
        self._generation = 0
        self._queued = 0
        sink.on_playback_ended(self._on_sink_ended)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._changed = asyncio.Event()
        self._task = asyncio.create_task(self._drain(), name="playback-queue")

    async def stop(self) -> None:
        self.flush()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    @property
    def current_turn(self) -> Optional[str]:
        return self._current_turn

    @property
    def pending(self) -> int:
        """Chunks queued but not yet handed to the sink."""
        return self._queued

    @property
    def is_playing(self) -> bool:
        return bool(self._in_flight)

    def begin_turn(self, turn_id: str) -> None:
        """Accept chunks for `turn_id` from now on."""
        self._current_turn = turn_id

    def enqueue(self, chunk: SynthesisChunk) -> bool:
        """Queue a chunk; chunks of any Turn other than the current one are rejected."""
        if chunk.turn_id != self._current_turn:
            logger.debug("Rejecting chunk %d of stale turn %s", chunk.seq, chunk.turn_id)
            return False
        self._queue.put_nowait(chunk)
        self._queued += 1
        return True

    def finish_turn(self, turn_id: str) -> "asyncio.Future[bool]":
        """
        Mark the end of a Turn's audio.

        Returns a future resolving to True once every chunk queued before the
        marker has played, or False if the Turn was flushed first.
        """
        future = self._loop.create_future()
        if turn_id != self._current_turn:
            future.set_result(False)
            return future
        self._waiters[turn_id] = future
        self._queue.put_nowait(_EndOfTurn(turn_id))
        return future

    def flush(self) -> None:
        """Stop the audio in the sink and discard every queued chunk."""
        dropped = 0
        if self._queue is not None:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                if isinstance(item, SynthesisChunk):
                    dropped += 1
        in_flight = len(self._in_flight)
        self._queued = 0
        self._current_turn = None
        self._sink.flush()
        self._generation += 1
        self._in_flight.clear()
        if self._changed is not None:
            self._changed.set()
        for future in self._waiters.values():
            if not future.done():
                future.set_result(False)
        self._waiters.clear()
        if dropped or in_flight:
            logger.info("Playback flushed (%d queued, %d in the sink dropped)", dropped, in_flight)

    def _on_sink_ended(self) -> None:
        # May be called from the audio device thread; the generation ties the
        # signal to buffers handed over before any later flush.
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._chunk_ended, self._generation)

    def _chunk_ended(self, generation: int) -> None:
        if generation != self._generation or not self._in_flight:
            return
        chunk = self._in_flight.popleft()
        if chunk.turn_id == self._current_turn:
            _notify(self._on_chunk_played, chunk)
            if self._in_flight:
                _notify(self._on_chunk_started, self._in_flight[0])
        self._changed.set()

    async def _wait_for(self, predicate: Callable[[], bool]) -> None:
        while not predicate():
            self._changed.clear()
            await self._changed.wait()

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            if isinstance(item, _EndOfTurn):
                await self._wait_for(lambda: not self._in_flight)
                future = self._waiters.pop(item.turn_id, None)
                if future is not None and not future.done():
                    future.set_result(item.turn_id == self._current_turn)
                continue

            chunk = item
            generation = self._generation
            if chunk.turn_id == self._current_turn:
                await self._wait_for(lambda: len(self._in_flight) <= self.lookahead)
            if generation == self._generation:
                # otherwise flush() has already zeroed the count
                self._queued = max(0, self._queued - 1)
            if chunk.turn_id != self._current_turn:
                continue

            try:
                self._sink.enqueue(chunk.audio)
            except AudioDeviceError as exc:
                logger.error("Playback device error: %s", exc)
                self._report(exc)
                continue
            except Exception as exc:
                logger.exception("Playback of chunk %d of turn %s failed", chunk.seq, chunk.turn_id)
                self._report(exc)
                continue

            self._in_flight.append(chunk)
            if len(self._in_flight) == 1:
                _notify(self._on_chunk_started, chunk)

    def _report(self, exc: Exception) -> None:
        self.flush()
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("Playback error handler failed")


def _notify(callback, chunk: SynthesisChunk) -> None:
    if callback is None:
        return
    try:
        callback(chunk)
    except Exception:
        logger.exception("Playback callback failed for chunk %d of turn %s", chunk.seq, chunk.turn_id)
