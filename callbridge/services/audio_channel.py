"""
Duplex media channel to the telephony side.

AudioFrameChannel wraps the FastAPI WebSocket of one Twilio media stream. It
parses inbound messages into typed events and serializes outbound commands
addressed to the stream id assigned when the stream opened.
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from callbridge.config.constants import LOGGER_NAME
from callbridge.errors import TransportError
from callbridge.models.message_schemas import (
    ClearCommand,
    MarkName,
    OutboundMark,
    OutboundMedia,
    StreamEvent,
    parse_stream_event,
)

logger = logging.getLogger(LOGGER_NAME)


class AudioFrameChannel:
    """Ordered, message-based transport over one media stream WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.stream_id: Optional[str] = None
        self.closed = False
        self.frames_received = 0
        self.frames_dropped = 0

    async def receive(self) -> AsyncIterator[StreamEvent]:
        """
        Yield inbound events until the peer disconnects.

        Malformed messages are logged and skipped; they never end the stream.
        """
        while not self.closed:
            try:
                raw = await self.websocket.receive_text()
            except WebSocketDisconnect as e:
                logger.info(f"Media stream disconnected (code={e.code}) for stream: {self.stream_id}")
                self.closed = True
                return
            except RuntimeError as e:
                # Starlette raises RuntimeError once the socket is no longer connected
                logger.info(f"Media stream receive ended for stream {self.stream_id}: {e}")
                self.closed = True
                return

            self.frames_received += 1
            try:
                yield parse_stream_event(raw)
            except ValidationError as e:
                self.frames_dropped += 1
                logger.warning(f"Dropping malformed media stream message: {e.errors()[:1]}")

    async def play_audio(self, audio: bytes) -> None:
        if not self.stream_id:
            logger.warning("Dropping outbound audio: stream id not assigned yet")
            return
        await self._send(OutboundMedia.from_audio(self.stream_id, audio))

    async def send_mark(self, label: str) -> None:
        if not self.stream_id:
            logger.warning(f"Dropping mark {label}: stream id not assigned yet")
            return
        await self._send(OutboundMark(streamSid=self.stream_id, mark=MarkName(name=label)))

    async def clear(self) -> None:
        if not self.stream_id:
            return
        logger.info(f"Clearing playback on stream: {self.stream_id}")
        await self._send(ClearCommand(streamSid=self.stream_id))

    async def _send(self, command: BaseModel) -> None:
        if self.closed:
            raise TransportError(f"Media stream {self.stream_id} is closed")
        try:
            await self.websocket.send_text(command.model_dump_json())
        except (WebSocketDisconnect, RuntimeError) as e:
            self.closed = True
            raise TransportError(f"Failed to send to media stream {self.stream_id}: {e}") from e

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close()
        except RuntimeError:
            # Already closed by the peer
            pass
        logger.info(f"Media stream channel closed: {self.stream_id}")
