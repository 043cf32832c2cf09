"""
Voice backend interface.

A VoiceBackendAdapter turns caller speech into synthesized agent speech. The
CallSessionManager is written against this interface only; the two
strategies (a composed STT -> conversation engine -> TTS pipeline, and a
managed conversational-voice service) are interchangeable behind it.

Adapters report everything through async callbacks registered by the
manager. Callback failures are logged and never break the adapter's own
receive loops.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.call_session import AdaptationEvent, CallConfig

logger = logging.getLogger(LOGGER_NAME)

Callback = Callable[..., Awaitable[None]]
IndexAllocator = Callable[[], int]


@dataclass
class SynthesizedChunk:
    """
    A unit of synthesized audio for one response index.

    A chunk with ``final=True`` is the end-of-utterance marker for its index;
    it may carry no audio.
    """

    response_index: int
    audio: bytes = b""
    final: bool = False
    correlation_token: Optional[int] = None


class VoiceBackendAdapter(ABC):
    """Base class for voice backend strategies."""

    # True when the backend produces its own replies to recognized speech,
    # so recognized utterances must not be submitted back to it.
    autonomous_replies = False

    def __init__(self):
        self.call_id: Optional[str] = None
        self._initialized = False
        self._callbacks: Dict[str, List[Callback]] = {}
        counter = itertools.count()
        self._allocate_index: IndexAllocator = lambda: next(counter)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def use_index_allocator(self, allocator: IndexAllocator) -> None:
        """Draw response indices from ``allocator`` (the session's sequencer)."""
        self._allocate_index = allocator

    # Callback registration
    def on_synthesized_chunk(self, callback: Callback) -> None:
        self._register("chunk", callback)

    def on_utterance_fragment(self, callback: Callback) -> None:
        self._register("fragment", callback)

    def on_utterance(self, callback: Callback) -> None:
        self._register("utterance", callback)

    def on_interruption_signal(self, callback: Callback) -> None:
        self._register("interruption", callback)

    def on_adaptation(self, callback: Callback) -> None:
        self._register("adaptation", callback)

    def on_agent_text(self, callback: Callback) -> None:
        self._register("agent_text", callback)

    def on_failure(self, callback: Callback) -> None:
        self._register("failure", callback)

    def _register(self, event: str, callback: Callback) -> None:
        self._callbacks.setdefault(event, []).append(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                await callback(*args)
            except Exception as e:
                logger.error(
                    f"[{self.call_id}] Error in {event} callback: {e}", exc_info=True
                )

    async def _emit_chunk(self, chunk: SynthesizedChunk) -> None:
        await self._emit("chunk", chunk)

    async def _emit_adaptation(self, event: AdaptationEvent) -> None:
        await self._emit("adaptation", event)

    # Strategy operations
    @abstractmethod
    async def initialize(self, config: CallConfig) -> None:
        """
        Bring the backend up for one call and start the greeting.

        Raises:
            BackendInitError: The backend could not be brought up.
        """

    @abstractmethod
    async def submit_utterance(self, text: str, correlation_token: int) -> None:
        """Submit one finished caller utterance; never waits for the reply."""

    @abstractmethod
    async def send_audio(self, audio: bytes) -> None:
        """Forward one frame of line audio to the backend."""

    async def acknowledge_utterance(self, correlation_token: int) -> None:
        """Note an utterance the backend recognized and is answering by itself."""

    async def speak(self, text: str) -> bool:
        """
        Synthesize a fixed utterance outside the conversation.

        Returns:
            False when this backend cannot speak arbitrary text
        """
        return False

    async def interrupt(self) -> None:
        """Stop synthesis already in progress for the current reply."""

    @abstractmethod
    async def terminate(self) -> None:
        """Release every resource held for the call; safe to call twice."""
