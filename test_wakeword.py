"""Tests for the Porcupine adapter, with the engine replaced by a stand-in."""

import pvporcupine
import pytest

from conftest import make_frame
from errors import ConfigurationError
from wakeword import DETECTION_CONFIDENCE, PorcupineWakeWord


class StandInPorcupine:
    frame_length = 300
    sample_rate = 16000

    def __init__(self, detect_on=()):
        self.detect_on = set(detect_on)
        self.blocks = []
        self.deleted = False

    def process(self, pcm):
        assert len(pcm) == self.frame_length
        self.blocks.append(pcm)
        return 0 if len(self.blocks) in self.detect_on else -1

    def delete(self):
        self.deleted = True


@pytest.fixture
def engine(monkeypatch):
    engine = StandInPorcupine()
    created = []

    def create(**kwargs):
        created.append(kwargs)
        return engine

    monkeypatch.setattr(pvporcupine, "create", create)
    engine.created = created
    return engine


class TestPorcupineWakeWord:

    def test_rechunks_frames_to_engine_length(self, engine):
        detector = PorcupineWakeWord("key", keyword="computer", sensitivity=0.7)

        for seq in range(3):
            assert detector.process(make_frame(seq)) is None

        # 3 x 512 samples -> 5 full blocks of 300, 36 pending
        assert len(engine.blocks) == 5
        assert engine.created == [{"access_key": "key", "keywords": ["computer"],
                                   "sensitivities": [0.7]}]

    def test_detection_reports_fixed_confidence(self, engine):
        engine.detect_on = {1}
        detector = PorcupineWakeWord("key", keyword="computer")

        event = detector.process(make_frame(7))

        assert event.keyword == "computer"
        assert event.confidence == DETECTION_CONFIDENCE
        assert event.frame_seq == 7

    def test_missing_custom_model(self, engine, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            PorcupineWakeWord("key", keyword=str(tmp_path / "hey.ppn"))

    def test_custom_model_uses_file_stem(self, engine, tmp_path):
        model = tmp_path / "hey_loop.ppn"
        model.write_bytes(b"\0")

        detector = PorcupineWakeWord("key", keyword=str(model))

        assert detector.keyword == "hey_loop"
        assert engine.created[0]["keyword_paths"] == [str(model)]

    def test_engine_errors_become_configuration_errors(self, monkeypatch):
        def create(**kwargs):
            raise ValueError("bad access key")

        monkeypatch.setattr(pvporcupine, "create", create)

        with pytest.raises(ConfigurationError, match="bad access key"):
            PorcupineWakeWord("nope")

    def test_close_releases_engine(self, engine):
        detector = PorcupineWakeWord("key")
        detector.close()
        detector.close()

        assert engine.deleted
