"""
Barge-in detection.

The detector is a heuristic rather than a voice-activity decision: a partial
utterance that arrives while agent audio is still outstanding, and that is
longer than MIN_INTERRUPTION_CHARS once stripped, is taken as the caller
talking over the agent. Raising the threshold filters more noise and
backchannel ("uh", "ok") at the cost of slower barge-in.
"""

import logging
from typing import Dict, Optional

from callbridge.config.constants import LOGGER_NAME, MIN_INTERRUPTION_CHARS
from callbridge.services.audio_channel import AudioFrameChannel
from callbridge.session.playback import PlaybackSequencer

logger = logging.getLogger(LOGGER_NAME)


class InterruptionDetector:
    def __init__(
        self,
        channel: AudioFrameChannel,
        sequencer: PlaybackSequencer,
        pending_marks: Dict[str, None],
        threshold: int = MIN_INTERRUPTION_CHARS,
    ):
        self._channel = channel
        self._sequencer = sequencer
        self._pending_marks = pending_marks
        self.threshold = threshold
        self.interruptions = 0

    async def on_fragment(self, text: str) -> bool:
        """
        Inspect one partial utterance.

        Returns:
            True if outstanding playback was cleared
        """
        if not self._pending_marks:
            return False
        if len(text.strip()) <= self.threshold:
            logger.debug(f"Fragment below interruption threshold: {text!r}")
            return False

        logger.info(f"Caller interrupted playback on stream {self._channel.stream_id}: {text!r}")
        await self._interrupt()
        return True

    async def on_backend_interruption(self) -> bool:
        """Handle a barge-in already detected by the voice backend itself."""
        if not self._pending_marks and self._sequencer.pending_index is None:
            return False
        logger.info(f"Backend reported interruption on stream {self._channel.stream_id}")
        await self._interrupt()
        return True

    async def _interrupt(self) -> None:
        pending: Optional[int] = self._sequencer.pending_index
        # Marks are cleared before awaiting so a concurrent fragment sees an
        # empty set and cannot issue a second clear
        self._pending_marks.clear()
        self.interruptions += 1
        await self._channel.clear()
        if pending is not None:
            await self._sequencer.cancel(pending)
