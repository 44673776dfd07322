# main.py - Voice Agent Pipeline Main Entry Point
"""
This is the entry point of the voice agent.

It builds every component of the real-time voice conversation system from the
environment (and .env), then runs the pipeline until interrupted:
- Audio capture from the microphone, wake-word detection and VAD
- Speech-to-text transcription (Cartesia)
- Reply generation (Anthropic)
- Text-to-speech synthesis (Cartesia)
- Audio playback with barge-in

Providers whose credentials are missing are disabled individually; the pipeline
still starts and reports the problem as a configuration error.
"""

import argparse
import asyncio
import logging
import signal
from typing import Dict, Optional

from asr import CartesiaASR
from audio_player import SoundDeviceAudioPlayer
from components import ProviderKind
from config import PipelineConfig
from credentials import CredentialSource, EnvCredentialSource
from errors import ConfigurationError
from events import EventBus, EventType, PipelineEvent
from llm import AnthropicLLM
from logging_setup import configure_logging
from orchestrator import VoicePipeline
from providers import ProviderSpec, build_manager
from sources import RealTimeMicrophoneSource, WavFileSource
from tts import CartesiaTTS
from vad import EnergyVAD
from wakeword import PorcupineWakeWord

logger = logging.getLogger("voiceloop")


def provider_registry(config: PipelineConfig) -> Dict[ProviderKind, Dict[str, ProviderSpec]]:
    """Back-ends selectable by name in the *_PROVIDERS variables."""
    audio = config.audio

    def cartesia_asr(secret, option):
        return CartesiaASR(secret, model=option or "ink-whisper", sample_rate=audio.sample_rate)

    def anthropic_llm(secret, option):
        return AnthropicLLM(secret, model=option or "claude-sonnet-4-20250514")

    def cartesia_tts(secret, option):
        return CartesiaTTS(secret, model_id=option or "sonic-2", sample_rate=audio.output_sample_rate)

    return {
        ProviderKind.TRANSCRIPTION: {"cartesia": ProviderSpec(cartesia_asr, "CARTESIA_API_KEY")},
        ProviderKind.GENERATION: {"anthropic": ProviderSpec(anthropic_llm, "ANTHROPIC_API_KEY")},
        ProviderKind.SYNTHESIS: {"cartesia": ProviderSpec(cartesia_tts, "CARTESIA_API_KEY")},
    }


def build_pipeline(config: PipelineConfig,
                   credentials: CredentialSource,
                   events: Optional[EventBus] = None,
                   wav_path: Optional[str] = None) -> VoicePipeline:
    """Create the production pipeline: microphone/speaker, Porcupine, energy VAD, Cartesia + Anthropic."""
    events = events or EventBus()
    registry = provider_registry(config)
    entries = {
        ProviderKind.TRANSCRIPTION: config.transcription_providers,
        ProviderKind.GENERATION: config.generation_providers,
        ProviderKind.SYNTHESIS: config.synthesis_providers,
    }
    managers = {
        kind: build_manager(kind, entries[kind], registry[kind], credentials, events=events,
                            **config.policy.for_kind(kind.value))
        for kind in ProviderKind
    }

    access_key = credentials.get_secret("PORCUPINE_ACCESS_KEY")
    if not access_key:
        raise ConfigurationError("PORCUPINE_ACCESS_KEY is required for wake-word detection")
    capture = config.capture
    wake_word = PorcupineWakeWord(access_key, keyword=capture.wake_keyword,
                                  sensitivity=capture.wake_sensitivity)

    audio = config.audio
    vad = EnergyVAD.for_frames(audio.frame_duration, threshold=capture.vad_threshold,
                               min_speech_seconds=capture.min_speech_seconds,
                               silence_seconds=capture.silence_seconds)
    if wav_path:
        source = WavFileSource(wav_path, frame_samples=audio.frame_samples)
    else:
        source = RealTimeMicrophoneSource(sample_rate=audio.sample_rate,
                                          frame_samples=audio.frame_samples,
                                          device=audio.input_device)
    sink = SoundDeviceAudioPlayer(sample_rate=audio.output_sample_rate, device=audio.output_device)

    return VoicePipeline(source, wake_word, vad, sink,
                         managers[ProviderKind.TRANSCRIPTION],
                         managers[ProviderKind.GENERATION],
                         managers[ProviderKind.SYNTHESIS],
                         config=config, events=events)


def _print_event(event: PipelineEvent) -> None:
    """Console view of the conversation."""
    if event.type == EventType.TRANSCRIPT_FINAL:
        print(f"[You] {event['text']}")
    elif event.type == EventType.RESPONSE_CHUNK:
        print(event["text"], end="", flush=True)
    elif event.type == EventType.TURN_COMPLETED:
        print()
    elif event.type == EventType.ERROR:
        detail = event["detail"]
        print(f"\n[Error] {event['kind']} in {detail.get('stage')}: {detail.get('message')}")


async def run(config: PipelineConfig, wav_path: Optional[str] = None) -> None:
    events = EventBus()
    for event_type in (EventType.TRANSCRIPT_FINAL, EventType.RESPONSE_CHUNK,
                       EventType.TURN_COMPLETED, EventType.ERROR):
        events.on(event_type, _print_event)

    pipeline = build_pipeline(config, EnvCredentialSource(), events=events, wav_path=wav_path)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt cancels run() instead
            pass

    await pipeline.start()
    logger.info("Say '%s' to start talking (Ctrl+C to quit)", config.capture.wake_keyword)
    try:
        await stop_requested.wait()
    finally:
        await pipeline.stop()
        pipeline.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Wake-word voice assistant")
    parser.add_argument("--wav", help="replay a mono 16-bit WAV file instead of the microphone")
    parser.add_argument("--log-level", help="override LOG_LEVEL")
    args = parser.parse_args(argv)

    try:
        config = PipelineConfig.from_env()
    except ConfigurationError as exc:
        configure_logging()
        logger.error("Invalid configuration: %s", exc)
        return 2
    configure_logging(args.log_level or config.log_level, config.log_dir)

    try:
        asyncio.run(run(config, wav_path=args.wav))
    except ConfigurationError as exc:
        logger.error("Cannot start: %s", exc)
        return 2
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
