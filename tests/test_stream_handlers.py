import base64
from unittest.mock import AsyncMock, MagicMock

import pytest

from callbridge.handlers.stream_handlers import (
    handle_connected,
    handle_dtmf,
    handle_mark,
    handle_media,
    handle_start,
    handle_stop,
)
from callbridge.models.message_schemas import parse_stream_event
from fakes import FakeChannel


def make_session():
    session = MagicMock()
    session.call_id = "CA123"
    session.channel = FakeChannel()
    session.open = AsyncMock()
    session.on_media_frame = AsyncMock()
    session.on_mark_ack = AsyncMock()
    session.request_close = AsyncMock()
    return session


@pytest.mark.asyncio
class TestStreamHandlers:

    async def test_handle_connected(self):
        session = make_session()
        event = parse_stream_event('{"event": "connected", "protocol": "Call"}')

        await handle_connected(event, session)

        session.open.assert_not_called()

    async def test_handle_start_opens_session(self):
        session = make_session()
        event = parse_stream_event(
            '{"event": "start", "start": {"streamSid": "MZ1", "callSid": "CA1", "tracks": ["inbound"]}}'
        )

        await handle_start(event, session)

        session.open.assert_awaited_once_with("MZ1", "CA1")

    async def test_handle_media_forwards_decoded_audio(self):
        session = make_session()
        payload = base64.b64encode(b"\xff" * 160).decode()
        event = parse_stream_event(
            f'{{"event": "media", "media": {{"track": "inbound", "payload": "{payload}"}}}}'
        )

        await handle_media(event, session)

        session.on_media_frame.assert_awaited_once_with(b"\xff" * 160)

    async def test_handle_media_skips_outbound_track(self):
        session = make_session()
        event = parse_stream_event('{"event": "media", "media": {"track": "outbound", "payload": "AAE="}}')

        await handle_media(event, session)

        session.on_media_frame.assert_not_called()

    async def test_handle_media_drops_bad_payload(self):
        session = make_session()
        event = parse_stream_event('{"event": "media", "media": {"payload": "%%%"}}')

        await handle_media(event, session)

        session.on_media_frame.assert_not_called()
        assert session.channel.frames_dropped == 1

    async def test_handle_mark(self):
        session = make_session()
        event = parse_stream_event('{"event": "mark", "mark": {"name": "label-1"}}')

        await handle_mark(event, session)

        session.on_mark_ack.assert_awaited_once_with("label-1")

    async def test_handle_stop_requests_close(self):
        session = make_session()
        event = parse_stream_event('{"event": "stop", "stop": {}}')

        await handle_stop(event, session)

        session.request_close.assert_awaited_once_with("stream stopped")

    async def test_handle_dtmf_only_logs(self):
        session = make_session()
        event = parse_stream_event('{"event": "dtmf", "dtmf": {"digit": "#"}}')

        await handle_dtmf(event, session)

        session.request_close.assert_not_called()
