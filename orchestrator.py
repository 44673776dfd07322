# orchestrator.py - Voice pipeline state machine
"""
VoicePipeline drives one conversation loop:

    WakeListening -> Capturing -> Transcribing -> Generating -> Synthesizing -> Speaking
          ^                                                                      |
          +----------------------------------------------------------------------+

Audio capture, wake-word scanning and VAD run for as long as the pipeline is
started, independent of the current state; they are the only things allowed to
preempt an active Turn (barge-in). Each Turn runs as its own task. Aborting a
Turn invalidates its id, flushes playback and cancels the task, so nothing that
belongs to it can reach the speaker afterwards.

Only this class mutates PipelineState; observers subscribe through the EventBus
(or the on_* helpers) and read snapshots via status().
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from buffers import SpeechSegment, SpeechSegmentAssembler
from circuit import ProviderStatus
from components import (AudioSink, AudioSource, VadEventType, VoiceActivityDetector,
                        WakeWordDetector, WakeWordEvent)
from config import PipelineConfig
from conversation_manager import (ACTIVE_TURN_STATES, ConversationHistory, PipelineState, Turn,
                                  TurnTracker)
from errors import AudioDeviceError, PipelineError, ProviderError
from events import EventBus, EventType, PipelineEvent
from frames import AudioFrame, GenerationRequest, ResponseChunk, SynthesisChunk
from player import PlaybackQueue
from providers import ProviderManager
from tts import SentenceChunker

logger = logging.getLogger(__name__)

MANUAL_KEYWORD = "manual"


@dataclass(frozen=True)
class PipelineStatus:
    """Read-only snapshot of the pipeline."""
    state: PipelineState
    turn_id: Optional[str]
    providers: Tuple[ProviderStatus, ...]
    history_turns: int
    playback_pending: int


class VoicePipeline:
    def __init__(self,
                 source: AudioSource,
                 wake_word: WakeWordDetector,
                 vad: VoiceActivityDetector,
                 sink: AudioSink,
                 transcription: ProviderManager,
                 generation: ProviderManager,
                 synthesis: ProviderManager,
                 config: Optional[PipelineConfig] = None,
                 events: Optional[EventBus] = None):
        self.config = config or PipelineConfig()
        self.events = events or EventBus()
        self._source = source
        self._wake_word = wake_word
        self._vad = vad
        self._sink = sink
        self._transcription = transcription
        self._generation = generation
        self._synthesis = synthesis

        frame_duration = self.config.audio.frame_duration
        self._assembler = SpeechSegmentAssembler(self.config.capture.segment_frames(frame_duration),
                                                 events=self.events)
        self._playback = PlaybackQueue(sink,
                                       on_chunk_started=self._on_chunk_started,
                                       on_chunk_played=self._on_chunk_played,
                                       on_error=self._on_playback_error)
        self._tracker = TurnTracker()
        self._history = ConversationHistory(self.config.reply.history_turns)

        self._state = PipelineState.IDLE
        self._running = False
        self._capture_ok = True
        self._sink_ok = True
        self._listen_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._recover_task: Optional[asyncio.Task] = None

        # Capture bookkeeping for the open segment
        self._capture_elapsed = 0.0
        self._speech_started = False
        self._activated_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start providers, playback and capture; the pipeline begins wake listening."""
        if self._running:
            return
        self._running = True
        for manager in (self._transcription, self._generation, self._synthesis):
            await manager.start()
        await self._playback.start()

        try:
            self._sink.open()
        except AudioDeviceError as exc:
            self._device_failed("playback", exc)
            self._schedule_sink_recovery()
        else:
            self._set_state(PipelineState.WAKE_LISTENING)

        self._listen_task = asyncio.create_task(self._listen_loop(), name="voice-listen")
        logger.info("Voice pipeline started")

    async def stop(self) -> None:
        """Abort any Turn, release devices and providers, and return to Idle."""
        if not self._running:
            return
        self._running = False
        self._source.stop()
        turn_task = self._turn_task
        self._abort_turn("stop")
        self._assembler.discard()

        for task in (turn_task, self._listen_task, self._recover_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._listen_task = self._recover_task = None

        await self._playback.stop()
        self._sink.close()
        for manager in (self._transcription, self._generation, self._synthesis):
            await manager.stop()
        self._set_state(PipelineState.IDLE)
        logger.info("Voice pipeline stopped")

    def close(self) -> None:
        """Release the wake-word model. The pipeline cannot be started again."""
        self._wake_word.close()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def current_state(self) -> PipelineState:
        return self._state

    def status(self) -> PipelineStatus:
        providers = (self._transcription.status() + self._generation.status()
                     + self._synthesis.status())
        return PipelineStatus(state=self._state, turn_id=self._tracker.current_id,
                              providers=providers, history_turns=len(self._history),
                              playback_pending=self._playback.pending)

    def on_state_changed(self, callback: Callable[[PipelineEvent], None]):
        return self.events.on(EventType.STATE_CHANGED, callback)

    def on_transcript(self, callback: Callable[[PipelineEvent], None]):
        """Subscribe to both partial and final transcripts."""
        self.events.on(EventType.TRANSCRIPT_PARTIAL, callback)
        return self.events.on(EventType.TRANSCRIPT_FINAL, callback)

    def on_response_chunk(self, callback: Callable[[PipelineEvent], None]):
        return self.events.on(EventType.RESPONSE_CHUNK, callback)

    def on_error(self, callback: Callable[[PipelineEvent], None]):
        return self.events.on(EventType.ERROR, callback)

    def on_turn_completed(self, callback: Callable[[PipelineEvent], None]):
        return self.events.on(EventType.TURN_COMPLETED, callback)

    # ------------------------------------------------------------------
    # Manual controls
    # ------------------------------------------------------------------

    def trigger_wake(self) -> bool:
        """Push-to-talk: activate as if the wake word was heard. Returns True if it took effect."""
        event = WakeWordEvent(MANUAL_KEYWORD, 1.0)
        if self._state == PipelineState.WAKE_LISTENING:
            self._activate(event)
            return True
        if self._state in (PipelineState.SYNTHESIZING, PipelineState.SPEAKING):
            self._barge_in(MANUAL_KEYWORD)
            return True
        logger.debug("Manual activation ignored in state %s", self._state.value)
        return False

    def send_text(self, text: str) -> Optional[str]:
        """
        Start a Turn from typed text, skipping capture and transcription.

        Any active Turn or open capture is abandoned first. Returns the new
        Turn id, or None if the pipeline cannot take input right now.
        """
        text = text.strip()
        if not text:
            return None
        if not self._running or self._state == PipelineState.IDLE:
            logger.warning("Text input ignored: pipeline is %s",
                           self._state.value if self._running else "not running")
            return None
        if self._state in ACTIVE_TURN_STATES or self._state == PipelineState.CAPTURING:
            aborted = self._abort_turn("text_input")
            self._assembler.discard()
            if aborted:
                logger.info("Turn %s interrupted by text input", aborted)

        turn = Turn(transcript=text)
        turn.mark("activation")
        self._start_turn(turn, text=text)
        return turn.id

    def clear_history(self) -> None:
        self._history.clear()

    # ------------------------------------------------------------------
    # Capture path (runs for every frame)
    # ------------------------------------------------------------------

    async def _listen_loop(self) -> None:
        while self._running:
            try:
                async for frame in self._source.stream_frames():
                    if not self._running:
                        return
                    if not self._capture_ok:
                        self._capture_ok = True
                        logger.info("Capture device recovered")
                        self._resume_if_ready()
                    try:
                        self._handle_frame(frame)
                    except Exception as exc:
                        logger.exception("Error handling frame %d in state %s", frame.seq,
                                         self._state.value)
                        self._fail("internal", exc, stage=self._state.value)
                logger.info("Audio source ended")
                return
            except AudioDeviceError as exc:
                self._capture_ok = False
                self._device_failed("capture", exc)
                await asyncio.sleep(self.config.device_retry_interval)
            except Exception as exc:
                logger.exception("Audio source failed in state %s", self._state.value)
                self._fail("internal", exc, stage="capture")
                await asyncio.sleep(self.config.device_retry_interval)

    def _handle_frame(self, frame: AudioFrame) -> None:
        wake = self._wake_word.process(frame)
        state = self._state

        if state == PipelineState.WAKE_LISTENING:
            if wake is not None:
                self._activate(wake)
            return

        if state == PipelineState.CAPTURING:
            self._capture(frame)
            return

        if state in (PipelineState.SYNTHESIZING, PipelineState.SPEAKING):
            vad_event = self._vad.process(frame)
            if vad_event is not None and vad_event.type == VadEventType.SPEECH_START:
                self._barge_in("speech")
            elif wake is not None and wake.confidence >= self.config.capture.wake_threshold:
                self._barge_in("wake_word")

    def _activate(self, wake: WakeWordEvent) -> None:
        if wake.confidence < self.config.capture.wake_threshold:
            logger.debug("Ignoring activation '%s' with confidence %.2f (< %.2f)",
                         wake.keyword, wake.confidence, self.config.capture.wake_threshold)
            return
        logger.info("Activation '%s' (confidence %.2f)", wake.keyword, wake.confidence)
        self.events.emit(EventType.WAKE_WORD, keyword=wake.keyword, confidence=wake.confidence)
        self._begin_capture()

    def _begin_capture(self) -> None:
        self._assembler.discard()
        self._assembler.open()
        self._vad.reset()
        self._capture_elapsed = 0.0
        self._speech_started = False
        self._activated_at = time.monotonic()
        self._set_state(PipelineState.CAPTURING)

    def _capture(self, frame: AudioFrame) -> None:
        capture = self.config.capture
        self._assembler.append(frame)
        self._capture_elapsed += frame.duration

        vad_event = self._vad.process(frame)
        if vad_event is not None:
            if vad_event.type == VadEventType.SPEECH_START:
                self._speech_started = True
                logger.debug("Speech started at frame %d", frame.seq)
            elif vad_event.type == VadEventType.SPEECH_PAUSE:
                logger.debug("Speech paused at frame %d", frame.seq)
            elif vad_event.type == VadEventType.SPEECH_END:
                self._finish_capture("speech_end")
                return

        if self._capture_elapsed >= capture.max_speech_seconds:
            logger.info("Maximum utterance length (%.1fs) reached", capture.max_speech_seconds)
            self._finish_capture("max_duration")
        elif not self._speech_started and self._capture_elapsed >= capture.listen_timeout:
            logger.info("No speech within %.1fs of activation", capture.listen_timeout)
            self._assembler.discard()
            self._set_state(PipelineState.WAKE_LISTENING)

    def _finish_capture(self, reason: str) -> None:
        segment = self._assembler.finalize(reason)
        turn = Turn()
        if self._activated_at is not None:
            turn.mark("activation", self._activated_at)
        turn.mark("capture_end")
        logger.info("Captured %.2fs of speech (%s) for turn %s", segment.duration, reason, turn.id)
        self._start_turn(turn, segment=segment)

    def _barge_in(self, trigger: str) -> None:
        interrupted = self._abort_turn("barge_in")
        logger.info("Barge-in (%s) interrupted turn %s", trigger, interrupted)
        self.events.emit(EventType.BARGE_IN, turn_id=interrupted, trigger=trigger)
        self._begin_capture()

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    def _start_turn(self, turn: Turn, segment: Optional[SpeechSegment] = None,
                    text: Optional[str] = None) -> None:
        self._tracker.begin(turn)
        self._playback.begin_turn(turn.id)
        self._set_state(PipelineState.TRANSCRIBING if segment is not None else PipelineState.GENERATING)
        self._turn_task = asyncio.create_task(self._run_turn(turn, segment, text),
                                              name=f"turn-{turn.id[:8]}")

    def _is_stale(self, turn: Turn) -> bool:
        return not self._tracker.is_current(turn.id)

    async def _run_turn(self, turn: Turn, segment: Optional[SpeechSegment], text: Optional[str]) -> None:
        try:
            if segment is not None:
                text = await self._transcribe(turn, segment)
                if self._is_stale(turn):
                    return
                if not text:
                    logger.info("Empty transcript for turn %s; back to listening", turn.id)
                    self._tracker.invalidate()
                    self._set_state(PipelineState.WAKE_LISTENING)
                    return
                self._set_state(PipelineState.GENERATING)

            turn.transcript = text
            await self._respond(turn)
            if self._is_stale(turn):
                return

            played = await self._playback.finish_turn(turn.id)
            if played and not self._is_stale(turn):
                self._complete_turn(turn)
        except asyncio.CancelledError:
            raise
        except ProviderError as exc:
            if self._is_stale(turn):
                return
            logger.error("Turn %s failed in %s: %s", turn.id, self._state.value, exc)
            self._fail(exc.kind, exc, stage=self._state.value, provider_kind=exc.provider_kind,
                       provider=exc.provider)
        except Exception as exc:
            if self._is_stale(turn):
                return
            logger.exception("Unexpected error in turn %s (state %s)", turn.id, self._state.value)
            kind = exc.kind if isinstance(exc, PipelineError) else "internal"
            self._fail(kind, exc, stage=self._state.value)

    async def _transcribe(self, turn: Turn, segment: SpeechSegment) -> str:
        finals = []
        async for chunk in self._transcription.stream_request(
                segment.audio_bytes(), is_cancelled=lambda: self._is_stale(turn)):
            if chunk.is_final:
                finals.append(chunk.text.strip())
            else:
                self.events.emit(EventType.TRANSCRIPT_PARTIAL, text=chunk.text, turn_id=turn.id)
        if self._is_stale(turn):
            return ""
        text = " ".join(t for t in finals if t)
        turn.mark("transcript")
        if text:
            logger.info("Transcript (turn %s): %s", turn.id, text)
            self.events.emit(EventType.TRANSCRIPT_FINAL, text=text, turn_id=turn.id)
        return text

    async def _respond(self, turn: Turn) -> None:
        """Stream the reply and synthesize it concurrently, unit by unit."""
        reply = self.config.reply
        request = GenerationRequest(text=turn.transcript, history=self._history.messages(),
                                    system_prompt=reply.system_prompt)
        units: asyncio.Queue = asyncio.Queue()
        chunker = SentenceChunker(reply.min_chars) if reply.sentence_chunking else None
        synth_task = asyncio.create_task(self._synthesize(turn, units), name=f"synth-{turn.id[:8]}")

        try:
            seq = 0
            async for delta in self._generation.stream_request(
                    request, is_cancelled=lambda: self._is_stale(turn)):
                if seq == 0:
                    turn.mark("first_token")
                    self._vad.reset()
                    self._set_state(PipelineState.SYNTHESIZING)
                chunk = ResponseChunk(turn_id=turn.id, seq=seq, text=delta)
                self.events.emit(EventType.RESPONSE_CHUNK, text=chunk.text, seq=chunk.seq,
                                 turn_id=chunk.turn_id, chunk=chunk)
                seq += 1
                turn.reply += delta
                for unit in (chunker.feed(delta) if chunker else [delta]):
                    units.put_nowait(unit)
                if synth_task.done():
                    # Surface synthesis failures without waiting for the whole reply
                    synth_task.result()

            if chunker is not None:
                tail = chunker.flush()
                if tail:
                    units.put_nowait(tail)
            units.put_nowait(None)
            await synth_task
        finally:
            if not synth_task.done():
                synth_task.cancel()
                await asyncio.gather(synth_task, return_exceptions=True)

    async def _synthesize(self, turn: Turn, units: asyncio.Queue) -> None:
        seq = 0
        while True:
            unit = await units.get()
            if unit is None:
                return
            if not unit.strip():
                continue
            async for audio in self._synthesis.stream_request(
                    unit, is_cancelled=lambda: self._is_stale(turn)):
                if seq == 0:
                    turn.mark("first_audio")
                chunk = SynthesisChunk(turn_id=turn.id, seq=seq, audio=audio)
                self.events.emit(EventType.AUDIO_CHUNK_READY, audio=audio, seq=seq, turn_id=turn.id)
                self._playback.enqueue(chunk)
                seq += 1

    def _on_chunk_started(self, chunk: SynthesisChunk) -> None:
        if self._tracker.is_current(chunk.turn_id) and self._state == PipelineState.SYNTHESIZING:
            self._set_state(PipelineState.SPEAKING)

    def _on_chunk_played(self, chunk: SynthesisChunk) -> None:
        turn = self._tracker.current
        if turn is not None and turn.id == chunk.turn_id:
            turn.chunks_played += 1

    def _complete_turn(self, turn: Turn) -> None:
        turn.mark("playback_end")
        self._tracker.invalidate()
        self._history.append(turn.transcript, turn.reply)
        latencies = turn.latencies()
        logger.info("Turn %s completed: %d chunks played, latencies %s",
                    turn.id, turn.chunks_played, latencies)
        self.events.emit(EventType.TURN_COMPLETED, turn=turn, turn_id=turn.id,
                         transcript=turn.transcript, reply=turn.reply,
                         chunks_played=turn.chunks_played, latencies=latencies)
        self._set_state(PipelineState.WAKE_LISTENING)

    def _abort_turn(self, reason: str) -> Optional[str]:
        """Invalidate the current Turn, silence playback and cancel its task."""
        turn_id = self._tracker.invalidate()
        self._playback.flush()
        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if turn_id:
            logger.debug("Turn %s aborted (%s)", turn_id, reason)
        return turn_id

    # ------------------------------------------------------------------
    # Failures and recovery
    # ------------------------------------------------------------------

    def _fail(self, kind: str, exc: BaseException, *, stage: str, provider_kind: str = "",
              provider: str = "") -> None:
        """Report an error, abandon the Turn and pass through Error back to listening."""
        turn_id = self._abort_turn(kind)
        self._assembler.discard()
        detail = {"stage": stage, "provider_kind": provider_kind, "message": str(exc)}
        if provider:
            detail["provider"] = provider
        if turn_id:
            detail["turn_id"] = turn_id
        self.events.emit(EventType.ERROR, kind=kind, detail=detail)
        self._set_state(PipelineState.ERROR)
        self._resume_if_ready(from_error=True)

    def _resume_if_ready(self, from_error: bool = False) -> None:
        if not self._running:
            return
        if self._capture_ok and self._sink_ok:
            if from_error or self._state == PipelineState.IDLE:
                self._set_state(PipelineState.WAKE_LISTENING)
        else:
            self._set_state(PipelineState.IDLE)

    def _device_failed(self, stage: str, exc: AudioDeviceError) -> None:
        logger.error("Audio %s device error: %s", stage, exc)
        self._abort_turn("audio_device")
        self._assembler.discard()
        self.events.emit(EventType.ERROR, kind=AudioDeviceError.kind,
                         detail={"stage": stage, "provider_kind": "", "message": str(exc)})
        self._set_state(PipelineState.IDLE)

    def _on_playback_error(self, exc: Exception) -> None:
        if not isinstance(exc, AudioDeviceError):
            self._fail("internal", exc, stage="playback")
            return
        self._sink_ok = False
        self._device_failed("playback", exc)
        self._schedule_sink_recovery()

    def _schedule_sink_recovery(self) -> None:
        self._sink_ok = False
        if self._recover_task is None or self._recover_task.done():
            self._recover_task = asyncio.create_task(self._recover_sink(), name="sink-recovery")

    async def _recover_sink(self) -> None:
        while self._running and not self._sink_ok:
            await asyncio.sleep(self.config.device_retry_interval)
            try:
                self._sink.open()
            except AudioDeviceError as exc:
                logger.debug("Output device still unavailable: %s", exc)
                continue
            self._sink_ok = True
            logger.info("Output device recovered")
            self._resume_if_ready()

    def _set_state(self, new_state: PipelineState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info("State: %s -> %s", old_state.value, new_state.value)
        self.events.emit(EventType.STATE_CHANGED, **{"from": old_state, "to": new_state})
