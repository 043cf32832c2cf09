"""
Streaming speech-to-text over the Deepgram live transcription WebSocket.

Line audio (8 kHz mu-law) is forwarded unchanged. Interim results are
reported as utterance fragments; finalized segments are accumulated until
Deepgram signals the end of speech, then reported as one utterance.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from callbridge.config.constants import LINE_AUDIO_ENCODING, LINE_SAMPLE_RATE, LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
CONNECTION_TIMEOUT = 10  # seconds

TextCallback = Callable[[str], Awaitable[None]]


class SpeechToTextClient:
    """Client for one call's live transcription stream."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "nova-2",
        language: str = "en-US",
        url: str = DEEPGRAM_LISTEN_URL,
    ):
        self.api_key = api_key
        self.model = model
        self.language = language
        self.url = url
        self.ws = None
        self.call_id: Optional[str] = None
        self._on_fragment: Optional[TextCallback] = None
        self._on_final: Optional[TextCallback] = None
        self._final_parts: List[str] = []
        self._recv_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self._closing

    def build_url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": LINE_AUDIO_ENCODING,
            "sample_rate": str(LINE_SAMPLE_RATE),
            "channels": "1",
            "punctuate": "true",
            "interim_results": "true",
            "endpointing": "200",
            "utterance_end_ms": "1000",
        }
        return f"{self.url}?{urlencode(params)}"

    async def connect(
        self,
        on_fragment: TextCallback,
        on_final: TextCallback,
        call_id: Optional[str] = None,
    ) -> None:
        """
        Open the transcription stream.

        Raises:
            ConnectionError: No API key configured or the connection failed
        """
        if not self.api_key:
            raise ConnectionError("DEEPGRAM_API_KEY not configured")
        self.call_id = call_id
        self._on_fragment = on_fragment
        self._on_final = on_final
        try:
            self.ws = await asyncio.wait_for(
                websockets.connect(
                    self.build_url(),
                    additional_headers={"Authorization": f"Token {self.api_key}"},
                    max_size=16 * 1024 * 1024,
                    ping_interval=20,
                    ping_timeout=10,
                ),
                timeout=CONNECTION_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise ConnectionError(f"Deepgram streaming connection failed: {e}") from e

        logger.info(f"[{self.call_id}] Deepgram transcription stream opened (model={self.model})")
        self._recv_task = asyncio.create_task(self._recv_loop())

    async def send(self, audio: bytes) -> None:
        if not self.connected:
            return
        try:
            await self.ws.send(audio)
        except ConnectionClosed as e:
            logger.warning(f"[{self.call_id}] Deepgram stream closed while sending audio: {e}")
            self._closing = True

    async def _recv_loop(self) -> None:
        try:
            async for message in self.ws:
                await self.handle_message(message)
        except ConnectionClosed as e:
            if not self._closing:
                logger.warning(f"[{self.call_id}] Deepgram stream closed: {e}")
        except asyncio.CancelledError:
            logger.debug(f"[{self.call_id}] Deepgram receive loop cancelled")
            raise

    async def handle_message(self, message) -> None:
        """Process one message received from the transcription stream."""
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"[{self.call_id}] Ignoring non-JSON transcription message")
            return

        msg_type = data.get("type")
        if msg_type == "UtteranceEnd":
            await self._flush_final()
            return
        if msg_type != "Results":
            return

        alternatives = data.get("channel", {}).get("alternatives", [])
        text = alternatives[0].get("transcript", "").strip() if alternatives else ""

        if data.get("is_final"):
            if text:
                self._final_parts.append(text)
            if data.get("speech_final"):
                await self._flush_final()
        elif text and self._on_fragment:
            await self._on_fragment(text)

    async def _flush_final(self) -> None:
        if not self._final_parts:
            return
        utterance = " ".join(self._final_parts)
        self._final_parts = []
        logger.info(f"[{self.call_id}] Recognized utterance: {utterance}")
        if self._on_final:
            await self._on_final(utterance)

    async def close(self) -> None:
        if self._closing and self.ws is None:
            return
        self._closing = True
        if self.ws is not None:
            try:
                await self.ws.send(json.dumps({"type": "CloseStream"}))
                await self.ws.close()
            except ConnectionClosed:
                pass
            self.ws = None
        if self._recv_task and not self._recv_task.done():
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass
        logger.info(f"[{self.call_id}] Deepgram transcription stream closed")
