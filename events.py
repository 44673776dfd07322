# events.py - Observable event surface of the voice pipeline
"""
In-process event bus used by the orchestrator, the provider managers and the
speech segment assembler to publish what happens in the pipeline.

Delivery is synchronous and in emit order, so subscribers see chunks in the
same order they were produced and each event exactly once. A subscriber that
raises is logged and skipped; it can never break the pipeline.
"""

import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType(str, Enum):
    """All event types the pipeline publishes."""
    STATE_CHANGED = "state_changed"
    TRANSCRIPT_PARTIAL = "transcript_partial"
    TRANSCRIPT_FINAL = "transcript_final"
    RESPONSE_CHUNK = "response_chunk"
    AUDIO_CHUNK_READY = "audio_chunk_ready"
    TURN_COMPLETED = "turn_completed"
    ERROR = "error"
    WAKE_WORD = "wake_word"
    BARGE_IN = "barge_in"
    SEGMENT_EVICTED = "segment_evicted"
    PROVIDER_CHANGED = "provider_changed"


@dataclass(frozen=True)
class PipelineEvent:
    """A single published event."""
    type: EventType
    seq: int
    ts: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]


Callback = Callable[[PipelineEvent], None]


class EventBus:
    """Ordered publish/subscribe surface.

    Usage:
        bus = EventBus()
        bus.on(EventType.STATE_CHANGED, on_state)
        bus.on("*", log_everything)
        bus.emit(EventType.ERROR, kind="provider", detail={...})
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callback]] = {}
        self._seq = itertools.count()

    def on(self, event_type, callback: Callback) -> Callback:
        """Register a callback for one event type, or "*" for all of them."""
        self._callbacks.setdefault(_key(event_type), []).append(callback)
        return callback

    def off(self, event_type, callback: Callback) -> None:
        callbacks = self._callbacks.get(_key(event_type), [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event_type: EventType, **payload) -> PipelineEvent:
        """Publish an event to its subscribers, then to wildcard subscribers."""
        evt = PipelineEvent(type=EventType(event_type), seq=next(self._seq),
                            ts=time.time(), payload=payload)
        for key in (evt.type.value, WILDCARD):
            for cb in list(self._callbacks.get(key, [])):
                try:
                    cb(evt)
                except Exception:
                    logger.exception("Event callback failed for %s", evt.type.value)
        return evt


def _key(event_type) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)
