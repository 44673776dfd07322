# conversation_manager.py - Pipeline state, turns and conversation history
"""
Process-wide conversation bookkeeping owned by the orchestrator:

- PipelineState: the single state value of the pipeline
- Turn: one utterance-to-reply cycle with per-stage timing marks
- TurnTracker: which Turn is current; aborting a Turn invalidates its id so
  every component holding work for it drops that work at its next checkpoint
- ConversationHistory: recent completed turns sent along with each request
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    WAKE_LISTENING = "wake_listening"
    CAPTURING = "capturing"
    TRANSCRIBING = "transcribing"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    SPEAKING = "speaking"
    ERROR = "error"


# States in which a Turn is in flight and must be abandoned on a forced transition
ACTIVE_TURN_STATES = frozenset({
    PipelineState.TRANSCRIBING,
    PipelineState.GENERATING,
    PipelineState.SYNTHESIZING,
    PipelineState.SPEAKING,
})


@dataclass
class Turn:
    """One user utterance and the assistant's reply to it."""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    transcript: str = ""
    reply: str = ""
    marks: Dict[str, float] = field(default_factory=dict)
    chunks_played: int = 0

    def mark(self, stage: str, at: Optional[float] = None) -> None:
        """Record when a stage was reached (first write wins)."""
        self.marks.setdefault(stage, time.monotonic() if at is None else at)

    def latencies(self) -> Dict[str, float]:
        """Seconds from the start of the turn to each recorded stage."""
        if not self.marks:
            return {}
        start = min(self.marks.values())
        return {stage: round(at - start, 3) for stage, at in self.marks.items()}


class TurnTracker:
    """Tracks the current Turn id. Ids that are no longer current are stale."""

    def __init__(self):
        self._current: Optional[Turn] = None

    @property
    def current(self) -> Optional[Turn]:
        return self._current

    @property
    def current_id(self) -> Optional[str]:
        return self._current.id if self._current else None

    def begin(self, turn: Turn) -> Turn:
        if self._current is not None:
            logger.debug("Turn %s superseded by %s", self._current.id, turn.id)
        self._current = turn
        return turn

    def is_current(self, turn_id: Optional[str]) -> bool:
        return turn_id is not None and turn_id == self.current_id

    def invalidate(self) -> Optional[str]:
        """Abandon the current Turn; returns its id."""
        turn_id = self.current_id
        self._current = None
        return turn_id


class ConversationHistory:
    """Bounded list of completed user/assistant exchanges."""

    def __init__(self, max_turns: int = 10):
        self._exchanges: Deque[Tuple[str, str]] = deque(maxlen=max_turns or None)
        self._enabled = max_turns > 0

    def append(self, user: str, assistant: str) -> None:
        if self._enabled and user.strip() and assistant.strip():
            self._exchanges.append((user.strip(), assistant.strip()))

    def messages(self) -> Tuple[Dict[str, str], ...]:
        messages = []
        for user, assistant in self._exchanges:
            messages.append({"role": "user", "content": user})
            messages.append({"role": "assistant", "content": assistant})
        return tuple(messages)

    def clear(self) -> None:
        self._exchanges.clear()
        logger.info("Conversation history cleared")

    def __len__(self) -> int:
        return len(self._exchanges)
