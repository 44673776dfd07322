# errors.py - Exception taxonomy for the voice pipeline
"""
Every failure the pipeline knows how to classify derives from PipelineError.

Provider managers raise ProviderError subclasses after they have already tried
their local retry/fallback policy; only ProviderExhaustedError and unexpected
exceptions are meant to reach the orchestrator as state transitions.
"""

from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for all classified pipeline failures."""

    kind = "internal"


class ConfigurationError(PipelineError):
    """Invalid configuration or a missing credential."""

    kind = "configuration"


class AudioDeviceError(PipelineError):
    """Capture or playback device is unavailable."""

    kind = "audio_device"


class ProviderError(PipelineError):
    """A single provider request failed."""

    kind = "provider"

    def __init__(self, message: str, provider_kind: str = "", provider: str = ""):
        super().__init__(message)
        self.provider_kind = provider_kind
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """A provider did not deliver a chunk within its time budget."""


class ProviderStreamError(ProviderError):
    """A provider failed after it had already delivered output."""


class ProviderExhaustedError(ProviderError):
    """No provider of a kind is usable for this request."""

    kind = "provider_exhausted"

    def __init__(self, provider_kind: str, attempted: Optional[Sequence[str]] = None):
        attempted = list(attempted or [])
        detail = ", ".join(attempted) if attempted else "none usable"
        super().__init__(f"all {provider_kind} providers exhausted ({detail})", provider_kind)
        self.attempted = attempted
