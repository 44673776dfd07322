"""Tests for reply chunking ahead of synthesis."""

from tts import SentenceChunker


class TestSentenceChunker:

    def test_holds_text_until_sentence_end(self):
        chunker = SentenceChunker(min_chars=10)

        assert chunker.feed("It is three") == []
        assert chunker.feed(" in the afternoon") == []
        assert chunker.feed(".") == ["It is three in the afternoon."]
        assert chunker.buffer == ""

    def test_short_sentences_are_merged(self):
        chunker = SentenceChunker(min_chars=20)

        assert chunker.feed("Sure.") == []
        assert chunker.feed(" It's 3 PM right now.") == ["Sure. It's 3 PM right now."]

    def test_flush_returns_remainder(self):
        chunker = SentenceChunker(min_chars=50)
        chunker.feed("Bye")

        assert chunker.flush() == "Bye"
        assert chunker.flush() is None

    def test_cjk_punctuation(self):
        chunker = SentenceChunker(min_chars=1)

        assert chunker.feed("现在是下午三点。") == ["现在是下午三点。"]
