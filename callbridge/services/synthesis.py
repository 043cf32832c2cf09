"""
Streaming speech synthesis over the ElevenLabs text-to-speech WebSocket.

Each request opens a short-lived ``stream-input`` connection, sends the text
and yields mu-law 8 kHz audio chunks as they arrive, so playback can start
before the whole utterance is synthesized.
"""

import asyncio
import base64
import json
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from callbridge.config.constants import LOGGER_NAME, TTS_OUTPUT_FORMAT

logger = logging.getLogger(LOGGER_NAME)

ELEVENLABS_TTS_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input"
CONNECTION_TIMEOUT = 10  # seconds

VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.8}


class SpeechSynthesisClient:
    def __init__(
        self,
        api_key: Optional[str],
        voice_id: Optional[str],
        model_id: str = "eleven_turbo_v2_5",
        output_format: str = TTS_OUTPUT_FORMAT,
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.output_format = output_format

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.voice_id)

    def build_url(self) -> str:
        params = {"model_id": self.model_id, "output_format": self.output_format}
        return f"{ELEVENLABS_TTS_URL.format(voice_id=self.voice_id)}?{urlencode(params)}"

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        """
        Synthesize ``text`` and yield raw audio chunks.

        Raises:
            ConnectionError: Synthesis is not configured or the service is
                unreachable
        """
        if not self.configured:
            raise ConnectionError("ElevenLabs TTS requires ELEVENLABS_API_KEY and ELEVENLABS_VOICE_ID")
        text = text.strip()
        if not text:
            return

        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    self.build_url(),
                    additional_headers={"xi-api-key": self.api_key},
                    max_size=16 * 1024 * 1024,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise ConnectionError(f"ElevenLabs TTS connection failed: {e}") from e

        async with ws:
            # A single space opens the stream; an empty string flushes and ends it
            await ws.send(json.dumps({"text": " ", "voice_settings": VOICE_SETTINGS}))
            await ws.send(json.dumps({"text": f"{text} ", "try_trigger_generation": True}))
            await ws.send(json.dumps({"text": ""}))

            chunks = 0
            try:
                async for message in ws:
                    data = json.loads(message)
                    if data.get("audio"):
                        chunks += 1
                        yield base64.b64decode(data["audio"])
                    if data.get("isFinal"):
                        break
            except ConnectionClosed as e:
                logger.warning(f"ElevenLabs TTS stream closed early: {e}")
            logger.debug(f"Synthesized {chunks} chunk(s) for: {text[:40]!r}")
