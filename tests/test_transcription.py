import asyncio
import json
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from callbridge.services.transcription import SpeechToTextClient
from fakes import FakeSocket


def results(transcript, is_final=False, speech_final=False):
    return json.dumps(
        {
            "type": "Results",
            "is_final": is_final,
            "speech_final": speech_final,
            "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.98}]},
        }
    )


class Collector:
    def __init__(self):
        self.fragments = []
        self.finals = []

    async def on_fragment(self, text):
        self.fragments.append(text)

    async def on_final(self, text):
        self.finals.append(text)


async def open_client(socket=None):
    client = SpeechToTextClient(api_key="dg-key")
    collector = Collector()
    socket = socket or FakeSocket()
    with patch(
        "callbridge.services.transcription.websockets.connect", AsyncMock(return_value=socket)
    ) as connect:
        await client.connect(collector.on_fragment, collector.on_final, call_id="CA1")
    return client, collector, socket, connect


def test_build_url_requests_line_audio_format():
    client = SpeechToTextClient(api_key="dg-key", model="nova-2", language="en-GB")

    query = parse_qs(urlparse(client.build_url()).query)

    assert query["encoding"] == ["mulaw"]
    assert query["sample_rate"] == ["8000"]
    assert query["interim_results"] == ["true"]
    assert query["model"] == ["nova-2"]
    assert query["language"] == ["en-GB"]


@pytest.mark.asyncio
class TestSpeechToTextClient:

    async def test_connect_requires_api_key(self):
        client = SpeechToTextClient(api_key=None)

        with pytest.raises(ConnectionError):
            await client.connect(AsyncMock(), AsyncMock())

    async def test_connect_failure(self):
        client = SpeechToTextClient(api_key="dg-key")
        with patch(
            "callbridge.services.transcription.websockets.connect",
            AsyncMock(side_effect=OSError("unreachable")),
        ):
            with pytest.raises(ConnectionError):
                await client.connect(AsyncMock(), AsyncMock())

    async def test_connect_authenticates_with_token(self):
        client, _, _, connect = await open_client()

        assert connect.call_args.kwargs["additional_headers"] == {"Authorization": "Token dg-key"}
        assert client.connected
        await client.close()

    async def test_interim_results_are_fragments(self):
        client, collector, _, _ = await open_client()

        await client.handle_message(results("I want"))
        await client.handle_message(results(""))

        assert collector.fragments == ["I want"]
        assert collector.finals == []
        await client.close()

    async def test_final_segments_are_joined_until_speech_final(self):
        client, collector, _, _ = await open_client()

        await client.handle_message(results("I want to", is_final=True))
        await client.handle_message(results("change my booking", is_final=True, speech_final=True))

        assert collector.finals == ["I want to change my booking"]
        await client.close()

    async def test_utterance_end_flushes_pending_segments(self):
        client, collector, _, _ = await open_client()

        await client.handle_message(results("yes please", is_final=True))
        await client.handle_message(json.dumps({"type": "UtteranceEnd", "last_word_end": 2.1}))
        await client.handle_message(json.dumps({"type": "UtteranceEnd", "last_word_end": 3.0}))

        assert collector.finals == ["yes please"]
        await client.close()

    async def test_other_messages_are_ignored(self):
        client, collector, _, _ = await open_client()

        await client.handle_message(json.dumps({"type": "Metadata", "request_id": "r1"}))
        await client.handle_message("not json")

        assert collector.fragments == [] and collector.finals == []
        await client.close()

    async def test_messages_from_socket_are_processed(self):
        socket = FakeSocket(results("hello there", is_final=True, speech_final=True))
        client, collector, _, _ = await open_client(socket)

        for _ in range(5):
            await asyncio.sleep(0)

        assert collector.finals == ["hello there"]
        await client.close()

    async def test_audio_is_forwarded_and_close_ends_stream(self):
        client, _, socket, _ = await open_client()

        await client.send(b"\xff" * 160)
        await client.close()
        await client.send(b"\x00" * 160)

        assert socket.sent[0] == b"\xff" * 160
        assert json.loads(socket.sent[1]) == {"type": "CloseStream"}
        assert len(socket.sent) == 2
        assert socket.closed
