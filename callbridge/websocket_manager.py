"""
WebSocket connection manager for Twilio media streams.

This module implements the server side of the ``/connection`` WebSocket:
- accept the connection and wrap it in an AudioFrameChannel
- create one CallSessionManager (with a fresh voice backend) per connection
- route every parsed media stream event to its handler
- terminate the session when the stream ends or the socket goes away

Sessions never share state; a failure on one connection only ends that call.
"""

import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import WebSocket

from callbridge.agent.base import VoiceBackendAdapter
from callbridge.agent.fallback import ApologySpeaker
from callbridge.config.constants import (
    EVENT_CONNECTED,
    EVENT_DTMF,
    EVENT_MARK,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    LOGGER_NAME,
    REPLY_TIMEOUT_SECONDS,
)
from callbridge.errors import TransportError
from callbridge.handlers.stream_handlers import (
    handle_connected,
    handle_dtmf,
    handle_mark,
    handle_media,
    handle_start,
    handle_stop,
)
from callbridge.models.call_session import CallState
from callbridge.models.message_schemas import StreamEvent
from callbridge.models.registry import SessionRegistry
from callbridge.services.audio_channel import AudioFrameChannel
from callbridge.services.lifecycle import LifecycleSink
from callbridge.session.manager import CallSessionManager

logger = logging.getLogger(LOGGER_NAME)

# Type hint for handler functions
HandlerFunc = Callable[[StreamEvent, CallSessionManager], Awaitable[None]]


class MediaStreamManager:
    """Accepts media stream connections and drives one session per connection.

    Each event is routed to a handler by its ``event`` name. The session is
    closed when it ends by itself (stop with drained playback) or, at the
    latest, when the WebSocket disconnects.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        adapter_factory: Callable[[], VoiceBackendAdapter],
        sink: Optional[LifecycleSink] = None,
        apology_speaker: Optional[ApologySpeaker] = None,
        reply_timeout: float = REPLY_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.adapter_factory = adapter_factory
        self.sink = sink or LifecycleSink()
        self.apology_speaker = apology_speaker
        self.reply_timeout = reply_timeout

        # Define handlers dictionary
        self.handlers: Dict[str, HandlerFunc] = {
            EVENT_CONNECTED: handle_connected,
            EVENT_START: handle_start,
            EVENT_MEDIA: handle_media,
            EVENT_MARK: handle_mark,
            EVENT_STOP: handle_stop,
            EVENT_DTMF: handle_dtmf,
        }

    def create_session(self, channel: AudioFrameChannel) -> CallSessionManager:
        return CallSessionManager(
            channel=channel,
            adapter=self.adapter_factory(),
            registry=self.registry,
            sink=self.sink,
            apology_speaker=self.apology_speaker,
            reply_timeout=self.reply_timeout,
        )

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Handle a media stream connection throughout its lifecycle.

        Args:
            websocket: The FastAPI WebSocket connection object
        """
        await websocket.accept()
        channel = AudioFrameChannel(websocket)
        session = self.create_session(channel)
        logger.info("Media stream WebSocket connection established")

        try:
            async for event in channel.receive():
                handler = self.handlers.get(event.event)
                if handler is None:
                    logger.warning(f"Unhandled media stream event: {event.event}")
                    continue
                await handler(event, session)
                if session.state == CallState.ENDED:
                    break
        except TransportError as e:
            logger.error(f"[{session.call_id}] Media stream transport error: {e}")
        except Exception as e:
            logger.error(f"[{session.call_id}] Error in media stream connection: {e}", exc_info=True)
        finally:
            await session.close("transport closed")
            await channel.close()
            logger.info(
                f"[{session.call_id}] Media stream connection closed "
                f"(frames={channel.frames_received}, dropped={channel.frames_dropped})"
            )
