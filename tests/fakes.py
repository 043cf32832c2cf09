"""Test doubles shared by the session engine tests."""

import asyncio
import json
from typing import List, Optional

import aiohttp

from callbridge.agent.base import SynthesizedChunk, VoiceBackendAdapter
from callbridge.errors import BackendInitError, TransportError
from callbridge.services.lifecycle import LifecycleSink


class FakeChannel:
    """Records every command a session sends to the line."""

    def __init__(self, stream_id: Optional[str] = "MZ-test"):
        self.stream_id = stream_id
        self.sent: List[tuple] = []
        self.fail_sends = False
        self.closed = False
        self.frames_received = 0
        self.frames_dropped = 0

    async def play_audio(self, audio: bytes) -> None:
        if self.fail_sends:
            raise TransportError("line gone")
        self.sent.append(("media", audio))

    async def send_mark(self, label: str) -> None:
        if self.fail_sends:
            raise TransportError("line gone")
        self.sent.append(("mark", label))

    async def clear(self) -> None:
        if self.fail_sends:
            raise TransportError("line gone")
        self.sent.append(("clear", None))

    async def close(self) -> None:
        self.closed = True

    @property
    def audio(self) -> List[bytes]:
        return [payload for kind, payload in self.sent if kind == "media"]

    @property
    def marks(self) -> List[str]:
        return [payload for kind, payload in self.sent if kind == "mark"]

    @property
    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.sent]


class FakeAdapter(VoiceBackendAdapter):
    """Voice backend driven by the test through its ``emit_*`` helpers."""

    def __init__(
        self,
        fail_init: bool = False,
        can_speak: bool = False,
        autonomous: bool = False,
        ready: Optional[asyncio.Event] = None,
    ):
        super().__init__()
        self.ready = ready
        self.fail_init = fail_init
        self.can_speak = can_speak
        self.autonomous_replies = autonomous
        self.config = None
        self.init_calls = 0
        self.submitted: List[tuple] = []
        self.acknowledged: List[int] = []
        self.audio_in: List[bytes] = []
        self.spoken: List[str] = []
        self.interrupts = 0
        self.terminated = 0

    async def initialize(self, config) -> None:
        self.init_calls += 1
        self.config = config
        if self.ready is not None:
            await self.ready.wait()
        if self.fail_init:
            raise BackendInitError("backend unreachable")
        self._initialized = True

    async def submit_utterance(self, text: str, correlation_token: int) -> None:
        self.submitted.append((text, correlation_token))

    async def acknowledge_utterance(self, correlation_token: int) -> None:
        self.acknowledged.append(correlation_token)

    async def send_audio(self, audio: bytes) -> None:
        self.audio_in.append(audio)

    async def speak(self, text: str) -> bool:
        if not self.can_speak:
            return False
        self.spoken.append(text)
        return True

    async def interrupt(self) -> None:
        self.interrupts += 1

    async def terminate(self) -> None:
        self.terminated += 1
        self._initialized = False

    def next_index(self) -> int:
        return self._allocate_index()

    async def emit_audio(self, index: int, audio: bytes, token: Optional[int] = None) -> None:
        await self._emit_chunk(SynthesizedChunk(response_index=index, audio=audio, correlation_token=token))

    async def emit_final(self, index: int, token: Optional[int] = None) -> None:
        await self._emit_chunk(SynthesizedChunk(response_index=index, final=True, correlation_token=token))

    async def emit(self, event: str, *args) -> None:
        await self._emit(event, *args)


class RecordingSink(LifecycleSink):
    """Lifecycle sink that only remembers what it was told."""

    def __init__(self):
        super().__init__()
        self.events: List[tuple] = []

    def call_started(self, session) -> None:
        self.events.append(("call_started", session.call_id))

    def transcript(self, session, entry) -> None:
        self.events.append(("transcript", entry.speaker, entry.text, entry.interaction_count))

    def adaptation(self, session, event) -> None:
        self.events.append(("adaptation", event.kind, event.name))

    def call_ended(self, session) -> None:
        self.events.append(("call_ended", session.call_id, session.end_reason))

    def of_kind(self, kind: str) -> List[tuple]:
        return [event for event in self.events if event[0] == kind]


class FakeSynthesis:
    """Stands in for SpeechSynthesisClient; yields the text's words as audio."""

    def __init__(self, configured: bool = True, fail: bool = False, delay: float = 0):
        self.configured = configured
        self.fail = fail
        self.delay = delay
        self.requests: List[str] = []

    async def synthesize(self, text: str):
        self.requests.append(text)
        if self.fail:
            raise ConnectionError("tts down")
        for word in text.split():
            if self.delay:
                await asyncio.sleep(self.delay)
            yield word.encode()


class FakeResponse:
    """Minimal aiohttp response: async context manager with a canned body."""

    def __init__(self, status: int = 200, body=None, content_type: str = "application/json"):
        self.status = status
        self.body = {} if body is None else body
        self.content_type = content_type

    async def json(self, content_type=None):
        return self.body

    async def text(self) -> str:
        return self.body if isinstance(self.body, str) else json.dumps(self.body)

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP {self.status}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeHttpSession:
    """Stands in for aiohttp.ClientSession; answers requests from a script.

    A scripted exception is raised by the request call itself.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[tuple] = []
        self.closed = False

    def _respond(self, method: str, url: str, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSocket:
    """In-memory WebSocket client connection; ``None`` in the queue ends iteration."""

    def __init__(self, *incoming):
        self.sent = []
        self.closed = False
        self.incoming = asyncio.Queue()
        for message in incoming:
            self.incoming.put_nowait(message)

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)

    def push(self, message):
        self.incoming.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()
        return False
