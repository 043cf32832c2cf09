"""
Handlers for Twilio media stream events.

Each handler receives one parsed event and the CallSessionManager of the
connection it arrived on, and translates the event into a session operation.
Handlers never raise for malformed payloads; the frame is dropped and logged.
"""

import logging

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.message_schemas import (
    ConnectedEvent,
    DtmfEvent,
    MarkEvent,
    MediaEvent,
    StartEvent,
    StopEvent,
)
from callbridge.session.manager import CallSessionManager

logger = logging.getLogger(LOGGER_NAME)


async def handle_connected(event: ConnectedEvent, session: CallSessionManager) -> None:
    logger.info(f"Media stream connected (protocol={event.protocol}, version={event.version})")


async def handle_start(event: StartEvent, session: CallSessionManager) -> None:
    """
    Handle the start event, which carries the stream and call identifiers.

    Args:
        event: The start event
        session: Session manager for this media stream
    """
    start = event.start
    logger.info(
        f"Media stream starting: stream={start.streamSid}, call={start.callSid}, "
        f"tracks={start.tracks}, format={start.mediaFormat}"
    )
    await session.open(start.streamSid, start.callSid)


async def handle_media(event: MediaEvent, session: CallSessionManager) -> None:
    """Forward one frame of caller audio; frames with a bad payload are dropped."""
    if event.media.track and event.media.track != "inbound":
        return
    try:
        audio = event.media.decode()
    except ValueError as e:
        session.channel.frames_dropped += 1
        logger.warning(f"[{session.call_id}] Dropping media frame: {e}")
        return
    await session.on_media_frame(audio)


async def handle_mark(event: MarkEvent, session: CallSessionManager) -> None:
    await session.on_mark_ack(event.mark.name)


async def handle_stop(event: StopEvent, session: CallSessionManager) -> None:
    logger.info(f"[{session.call_id}] Media stream stop received")
    await session.request_close("stream stopped")


async def handle_dtmf(event: DtmfEvent, session: CallSessionManager) -> None:
    logger.info(f"[{session.call_id}] DTMF digit received: {event.dtmf.digit}")
