import pytest

from callbridge.session.interruption import InterruptionDetector
from callbridge.session.playback import PlaybackSequencer
from fakes import FakeChannel


def make_detector(threshold=5):
    channel = FakeChannel()
    marks = {}
    sequencer = PlaybackSequencer(channel, marks)
    detector = InterruptionDetector(channel, sequencer, marks, threshold=threshold)
    return detector, sequencer, channel, marks


@pytest.mark.asyncio
class TestInterruptionDetector:

    async def test_long_fragment_clears_pending_playback(self):
        detector, sequencer, channel, marks = make_detector()
        await sequencer.enqueue(0, b"agent speech")
        await sequencer.enqueue(1, b"next sentence")

        interrupted = await detector.on_fragment("wait, that is not it")

        assert interrupted is True
        assert channel.kinds[-1] == "clear"
        assert marks == {}
        assert detector.interruptions == 1
        # Buffered audio of the cancelled reply never plays
        await sequencer.complete(0)
        assert channel.audio == [b"agent speech"]

    async def test_short_fragment_is_ignored(self):
        detector, sequencer, channel, marks = make_detector()
        await sequencer.enqueue(0, b"agent speech")

        interrupted = await detector.on_fragment("uh")

        assert interrupted is False
        assert "clear" not in channel.kinds
        assert len(marks) == 1

    async def test_threshold_is_exclusive_and_ignores_whitespace(self):
        detector, sequencer, channel, _ = make_detector(threshold=5)
        await sequencer.enqueue(0, b"agent speech")

        assert await detector.on_fragment("   okay!   ") is False
        assert await detector.on_fragment("okay!!") is True

    async def test_fragment_without_pending_marks_is_ignored(self):
        detector, _, channel, _ = make_detector()

        interrupted = await detector.on_fragment("a long sentence from the caller")

        assert interrupted is False
        assert channel.sent == []

    async def test_second_fragment_after_clear_issues_no_second_clear(self):
        detector, sequencer, channel, _ = make_detector()
        await sequencer.enqueue(0, b"agent speech")

        await detector.on_fragment("hold on a second")
        await detector.on_fragment("hold on a second please")

        assert channel.kinds.count("clear") == 1

    async def test_backend_interruption_clears_playback(self):
        detector, sequencer, channel, marks = make_detector()
        await sequencer.enqueue(0, b"agent speech")

        assert await detector.on_backend_interruption() is True
        assert channel.kinds[-1] == "clear"
        assert marks == {}

    async def test_backend_interruption_with_nothing_playing(self):
        detector, _, channel, _ = make_detector()

        assert await detector.on_backend_interruption() is False
        assert channel.sent == []

    async def test_interruption_cancels_announced_sentences_not_yet_synthesized(self):
        detector, sequencer, channel, _ = make_detector()
        first = sequencer.allocate_index()
        second = sequencer.allocate_index()
        await sequencer.enqueue(first, b"first sentence")
        await sequencer.complete(first)

        assert await detector.on_fragment("no, stop right there") is True
        await sequencer.enqueue(second, b"second sentence")
        await sequencer.complete(second)

        assert channel.audio == [b"first sentence"]
        assert channel.kinds[-1] == "clear"
        assert sequencer.pending_index is None

    async def test_backend_interruption_while_next_sentence_is_announced(self):
        detector, sequencer, channel, marks = make_detector()
        index = sequencer.allocate_index()

        assert await detector.on_backend_interruption() is True
        await sequencer.enqueue(index, b"late sentence")

        assert channel.audio == []
        assert marks == {}
