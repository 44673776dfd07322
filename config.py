# config.py - Pipeline configuration loaded from the environment
"""
All tunables of the voice pipeline, grouped by concern.

`PipelineConfig.from_env()` loads `.env` (python-dotenv) and then reads plain
environment variables, so the same settings work from a shell, a service unit
or a .env file. Provider lists are priority ordered, comma separated
`name[:option]` entries, for example:

    GENERATION_PROVIDERS=anthropic:claude-sonnet-4-20250514,anthropic:claude-3-5-haiku-latest

Any malformed value raises ConfigurationError naming the variable.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigurationError

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant in a voice conversation. Keep your responses natural "
    "and conversational, as if speaking aloud. Avoid using markdown formatting or complex punctuation."
)

ProviderEntries = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class AudioConfig:
    sample_rate: int = 16000
    frame_samples: int = 512  # 32ms at 16kHz, the Porcupine frame length
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    output_sample_rate: int = 24000

    @property
    def frame_duration(self) -> float:
        return self.frame_samples / self.sample_rate


@dataclass(frozen=True)
class CaptureConfig:
    wake_keyword: str = "porcupine"
    wake_sensitivity: float = 0.5
    wake_threshold: float = 0.5
    max_speech_seconds: float = 30.0
    # Ring buffer cap; defaults to max_speech_seconds worth of frames
    max_segment_frames: Optional[int] = None
    listen_timeout: float = 8.0
    vad_threshold: float = 0.015
    min_speech_seconds: float = 0.1
    silence_seconds: float = 1.5

    def segment_frames(self, frame_duration: float) -> int:
        if self.max_segment_frames:
            return self.max_segment_frames
        return max(1, math.ceil(self.max_speech_seconds / frame_duration))


@dataclass(frozen=True)
class ProviderPolicy:
    failure_threshold: int = 3
    cooldown: float = 60.0
    transcription_first_chunk_timeout: float = 5.0
    generation_first_chunk_timeout: float = 8.0
    synthesis_first_chunk_timeout: float = 5.0
    chunk_timeout: float = 15.0

    def for_kind(self, kind: str) -> dict:
        """Keyword arguments for a ProviderManager of the given kind."""
        return {
            "failure_threshold": self.failure_threshold,
            "cooldown": self.cooldown,
            "first_chunk_timeout": getattr(self, f"{kind}_first_chunk_timeout"),
            "chunk_timeout": self.chunk_timeout,
        }


@dataclass(frozen=True)
class ReplyConfig:
    sentence_chunking: bool = False
    min_chars: int = 50
    history_turns: int = 10
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class PipelineConfig:
    audio: AudioConfig = field(default_factory=AudioConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    policy: ProviderPolicy = field(default_factory=ProviderPolicy)
    reply: ReplyConfig = field(default_factory=ReplyConfig)
    transcription_providers: ProviderEntries = (("cartesia", "ink-whisper"),)
    generation_providers: ProviderEntries = (("anthropic", "claude-sonnet-4-20250514"),)
    synthesis_providers: ProviderEntries = (("cartesia", "sonic-2"),)
    device_retry_interval: float = 2.0
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, *, dotenv: bool = True) -> "PipelineConfig":
        """Build a configuration from environment variables (and .env)."""
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ
        r = _Reader(env)
        defaults = cls()

        audio = AudioConfig(
            sample_rate=r.get_int("SAMPLE_RATE", AudioConfig.sample_rate, minimum=8000),
            frame_samples=r.get_int("FRAME_SAMPLES", AudioConfig.frame_samples, minimum=32),
            input_device=r.get_optional_int("INPUT_DEVICE"),
            output_device=r.get_optional_int("OUTPUT_DEVICE"),
            output_sample_rate=r.get_int("OUTPUT_SAMPLE_RATE", AudioConfig.output_sample_rate, minimum=8000),
        )
        capture = CaptureConfig(
            wake_keyword=r.get_str("WAKE_KEYWORD", CaptureConfig.wake_keyword),
            wake_sensitivity=r.get_float("WAKE_SENSITIVITY", CaptureConfig.wake_sensitivity, 0.0, 1.0),
            wake_threshold=r.get_float("WAKE_THRESHOLD", CaptureConfig.wake_threshold, 0.0, 1.0),
            max_speech_seconds=r.get_float("MAX_SPEECH_SECONDS", CaptureConfig.max_speech_seconds, 0.5),
            max_segment_frames=r.get_optional_int("MAX_SEGMENT_FRAMES", minimum=1),
            listen_timeout=r.get_float("LISTEN_TIMEOUT_SECONDS", CaptureConfig.listen_timeout, 0.5),
            vad_threshold=r.get_float("VAD_THRESHOLD", CaptureConfig.vad_threshold, 0.0, 1.0),
            min_speech_seconds=r.get_float("MIN_SPEECH_SECONDS", CaptureConfig.min_speech_seconds, 0.0),
            silence_seconds=r.get_float("SILENCE_SECONDS", CaptureConfig.silence_seconds, 0.1),
        )
        policy = ProviderPolicy(
            failure_threshold=r.get_int("FAILURE_THRESHOLD", ProviderPolicy.failure_threshold, minimum=1),
            cooldown=r.get_float("BREAKER_COOLDOWN_SECONDS", ProviderPolicy.cooldown, 0.0),
            transcription_first_chunk_timeout=r.get_float(
                "TRANSCRIPTION_FIRST_CHUNK_TIMEOUT", ProviderPolicy.transcription_first_chunk_timeout, 0.1),
            generation_first_chunk_timeout=r.get_float(
                "GENERATION_FIRST_CHUNK_TIMEOUT", ProviderPolicy.generation_first_chunk_timeout, 0.1),
            synthesis_first_chunk_timeout=r.get_float(
                "SYNTHESIS_FIRST_CHUNK_TIMEOUT", ProviderPolicy.synthesis_first_chunk_timeout, 0.1),
            chunk_timeout=r.get_float("CHUNK_TIMEOUT_SECONDS", ProviderPolicy.chunk_timeout, 0.1),
        )
        reply = ReplyConfig(
            sentence_chunking=r.get_bool("SENTENCE_CHUNKING", ReplyConfig.sentence_chunking),
            min_chars=r.get_int("TTS_MIN_CHARS", ReplyConfig.min_chars, minimum=0),
            history_turns=r.get_int("HISTORY_TURNS", ReplyConfig.history_turns, minimum=0),
            system_prompt=r.get_str("SYSTEM_PROMPT", ReplyConfig.system_prompt),
        )
        log_dir = r.get_str("LOG_DIR", "")
        return cls(
            audio=audio,
            capture=capture,
            policy=policy,
            reply=reply,
            transcription_providers=r.get_providers("TRANSCRIPTION_PROVIDERS", defaults.transcription_providers),
            generation_providers=r.get_providers("GENERATION_PROVIDERS", defaults.generation_providers),
            synthesis_providers=r.get_providers("SYNTHESIS_PROVIDERS", defaults.synthesis_providers),
            device_retry_interval=r.get_float("DEVICE_RETRY_SECONDS", defaults.device_retry_interval, 0.1),
            log_level=r.get_str("LOG_LEVEL", defaults.log_level).upper(),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
        )


def parse_provider_list(value: str, variable: str = "providers") -> ProviderEntries:
    """Parse `name[:option],...` into ((name, option), ...)."""
    entries = []
    for raw in value.split(","):
        raw = raw.strip()
        if not raw:
            raise ConfigurationError(f"{variable}: empty provider entry in '{value}'")
        name, _, option = raw.partition(":")
        name = name.strip().lower()
        if not name:
            raise ConfigurationError(f"{variable}: provider entry '{raw}' has no name")
        entries.append((name, option.strip()))
    return tuple(entries)


class _Reader:
    _TRUE = {"1", "true", "yes", "on"}
    _FALSE = {"0", "false", "no", "off"}

    def __init__(self, env: Mapping[str, str]):
        self._env = env

    def _raw(self, name: str) -> Optional[str]:
        value = self._env.get(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_str(self, name: str, default: str) -> str:
        value = self._raw(name)
        return default if value is None else value

    def get_float(self, name: str, default: float, minimum: Optional[float] = None,
                  maximum: Optional[float] = None) -> float:
        value = self._raw(name)
        if value is None:
            return default
        try:
            number = float(value)
        except ValueError:
            raise ConfigurationError(f"{name} must be a number, got '{value}'") from None
        self._check_range(name, number, minimum, maximum)
        return number

    def get_int(self, name: str, default: int, minimum: Optional[int] = None) -> int:
        value = self._raw(name)
        if value is None:
            return default
        return self._parse_int(name, value, minimum)

    def get_optional_int(self, name: str, minimum: Optional[int] = None) -> Optional[int]:
        value = self._raw(name)
        if value is None:
            return None
        return self._parse_int(name, value, minimum)

    def get_bool(self, name: str, default: bool) -> bool:
        value = self._raw(name)
        if value is None:
            return default
        if value.lower() in self._TRUE:
            return True
        if value.lower() in self._FALSE:
            return False
        raise ConfigurationError(f"{name} must be a boolean, got '{value}'")

    def get_providers(self, name: str, default: ProviderEntries) -> ProviderEntries:
        value = self._raw(name)
        return default if value is None else parse_provider_list(value, name)

    def _parse_int(self, name: str, value: str, minimum: Optional[int]) -> int:
        try:
            number = int(value)
        except ValueError:
            raise ConfigurationError(f"{name} must be an integer, got '{value}'") from None
        self._check_range(name, number, minimum, None)
        return number

    @staticmethod
    def _check_range(name, number, minimum, maximum) -> None:
        if minimum is not None and number < minimum:
            raise ConfigurationError(f"{name} must be >= {minimum}, got {number}")
        if maximum is not None and number > maximum:
            raise ConfigurationError(f"{name} must be <= {maximum}, got {number}")
