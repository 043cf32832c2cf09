"""Canned apology playback for calls whose voice backend is unavailable."""

import logging

from callbridge.config.constants import APOLOGY_MESSAGE, LOGGER_NAME
from callbridge.services.synthesis import SpeechSynthesisClient
from callbridge.session.playback import PlaybackSequencer

logger = logging.getLogger(LOGGER_NAME)


class ApologySpeaker:
    """Synthesizes the apology utterance directly onto a session's sequencer."""

    def __init__(self, tts: SpeechSynthesisClient, text: str = APOLOGY_MESSAGE):
        self.tts = tts
        self.text = text

    async def play(self, sequencer: PlaybackSequencer, response_index: int) -> bool:
        """
        Returns:
            True if any apology audio reached the sequencer
        """
        played = False
        try:
            async for audio in self.tts.synthesize(self.text):
                await sequencer.enqueue(response_index, audio)
                played = True
        except ConnectionError as e:
            logger.error(f"Apology could not be synthesized: {e}")
        finally:
            await sequencer.complete(response_index)
        return played
