"""Tests for speech segment assembly."""

import pytest

from buffers import SpeechSegmentAssembler
from conftest import make_frame
from errors import PipelineError
from events import EventBus, EventType


class TestSpeechSegmentAssembler:

    def test_finalize_returns_frames_in_order(self):
        assembler = SpeechSegmentAssembler(max_frames=10)
        assembler.open()
        for seq in range(3):
            assembler.append(make_frame(seq))
        segment = assembler.finalize("speech_end")

        assert [f.seq for f in segment.frames] == [0, 1, 2]
        assert segment.reason == "speech_end"
        assert segment.duration == pytest.approx(3 * 0.032)
        assert len(segment.audio_bytes()) == 3 * 512 * 2
        assert not assembler.is_open

    def test_only_one_open_segment(self):
        assembler = SpeechSegmentAssembler(max_frames=10)
        assembler.open()

        with pytest.raises(PipelineError):
            assembler.open()

    def test_append_requires_open_segment(self):
        assembler = SpeechSegmentAssembler(max_frames=10)

        with pytest.raises(PipelineError):
            assembler.append(make_frame(0))
        with pytest.raises(PipelineError):
            assembler.finalize()

    def test_never_exceeds_max_frames(self):
        bus = EventBus()
        evictions = []
        bus.on(EventType.SEGMENT_EVICTED, evictions.append)
        assembler = SpeechSegmentAssembler(max_frames=5, events=bus)
        assembler.open()

        for seq in range(1000):
            assembler.append(make_frame(seq, samples=16))
            assert len(assembler) <= 5
        segment = assembler.finalize("max_duration")

        assert [f.seq for f in segment.frames] == [995, 996, 997, 998, 999]
        assert segment.frames_received == 1000
        assert segment.evicted == 995
        # Reported once per segment, not once per frame
        assert len(evictions) == 1
        assert evictions[0]["max_frames"] == 5

    def test_discard_resets(self):
        assembler = SpeechSegmentAssembler(max_frames=5)
        assembler.open()
        assembler.append(make_frame(0))
        assembler.discard()

        assert not assembler.is_open
        assert len(assembler) == 0
        assembler.open()
        assert assembler.frames_received == 0

    def test_rejects_empty_capacity(self):
        with pytest.raises(ValueError):
            SpeechSegmentAssembler(max_frames=0)
