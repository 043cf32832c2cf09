"""
Composed voice backend: speech-to-text -> conversation engine -> synthesis.

Every submitted utterance runs as its own pipeline task:

1. the conversation engine produces the reply (not cancellable by barge-in)
2. a reply whose correlation token is older than the latest submitted one is
   discarded
3. the reply is split into sentences, each sentence gets the next response
   index, and the sentences are synthesized in order

Only step 3 is cancelled on interruption. The greeting is spoken on
initialize as the session's first response index.
"""

import asyncio
import logging
import re
from typing import List, Optional, Set

from callbridge.agent.base import SynthesizedChunk, VoiceBackendAdapter
from callbridge.config.constants import APOLOGY_MESSAGE, LOGGER_NAME
from callbridge.errors import BackendInitError, BackendReplyError
from callbridge.models.call_session import CallConfig
from callbridge.services.conversation_engine import ConversationEngine
from callbridge.services.synthesis import SpeechSynthesisClient
from callbridge.services.transcription import SpeechToTextClient

logger = logging.getLogger(LOGGER_NAME)

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?•])\s+")


def split_sentences(text: str) -> List[str]:
    """Split a reply into partials that can be synthesized independently."""
    return [part.strip(" •") for part in SENTENCE_BOUNDARY.split(text) if part.strip(" •")]


class ComposedPipelineAdapter(VoiceBackendAdapter):
    def __init__(
        self,
        stt: SpeechToTextClient,
        engine: ConversationEngine,
        tts: SpeechSynthesisClient,
    ):
        super().__init__()
        self.stt = stt
        self.engine = engine
        self.tts = tts
        self._latest_token = -1
        self._tasks: Set[asyncio.Task] = set()
        self._speaking: Set[asyncio.Task] = set()
        self._closing = False

    async def initialize(self, config: CallConfig) -> None:
        if not self.tts.configured:
            raise BackendInitError("Speech synthesis is not configured")
        self.engine.start(config, call_id=self.call_id)
        try:
            await self.stt.connect(self._on_stt_fragment, self._on_stt_final, call_id=self.call_id)
        except ConnectionError as e:
            raise BackendInitError(f"Speech-to-text unavailable: {e}") from e

        self._initialized = True
        logger.info(f"[{self.call_id}] Composed pipeline ready")
        await self._emit("agent_text", config.first_message, None)
        self._spawn(self._speak([config.first_message], None))

    async def _on_stt_fragment(self, text: str) -> None:
        await self._emit("fragment", text)

    async def _on_stt_final(self, text: str) -> None:
        await self._emit("utterance", text)

    async def send_audio(self, audio: bytes) -> None:
        await self.stt.send(audio)

    async def submit_utterance(self, text: str, correlation_token: int) -> None:
        if not self._initialized or self._closing:
            logger.debug(f"[{self.call_id}] Ignoring utterance, pipeline not running")
            return
        self._latest_token = max(self._latest_token, correlation_token)
        self._spawn(self._run_turn(text, correlation_token))

    async def _run_turn(self, text: str, token: int) -> None:
        try:
            reply = await self.engine.reply(text, token)
        except BackendReplyError as e:
            logger.error(f"[{self.call_id}] Engine failed for interaction {token}: {e}")
            if token >= self._latest_token:
                await self._speak([APOLOGY_MESSAGE], token)
            return

        if reply.adaptation:
            await self._emit_adaptation(reply.adaptation)
        if token < self._latest_token:
            logger.info(
                f"[{self.call_id}] Discarding stale reply for interaction {token} "
                f"(latest is {self._latest_token})"
            )
            return
        if not reply.text:
            return

        await self._emit("agent_text", reply.text, token)
        await self._speak(split_sentences(reply.text), token)

    async def _speak(self, sentences: List[str], token: Optional[int]) -> None:
        task = asyncio.current_task()
        self._speaking.add(task)
        indices = [self._allocate_index() for _ in sentences]
        remaining = list(indices)
        try:
            for index, sentence in zip(indices, sentences):
                async for audio in self.tts.synthesize(sentence):
                    await self._emit_chunk(
                        SynthesizedChunk(response_index=index, audio=audio, correlation_token=token)
                    )
                remaining.remove(index)
                await self._emit_chunk(
                    SynthesizedChunk(response_index=index, final=True, correlation_token=token)
                )
        except ConnectionError as e:
            logger.error(f"[{self.call_id}] Synthesis failed: {e}")
        finally:
            self._speaking.discard(task)
            for index in remaining:
                await self._emit_chunk(
                    SynthesizedChunk(response_index=index, final=True, correlation_token=token)
                )

    async def speak(self, text: str) -> bool:
        if not self.tts.configured or self._closing:
            return False
        self._spawn(self._speak([text], None))
        return True

    async def interrupt(self) -> None:
        if self._speaking:
            logger.info(f"[{self.call_id}] Cancelling {len(self._speaking)} synthesis task(s)")
        for task in list(self._speaking):
            task.cancel()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[{self.call_id}] Pipeline task failed: {task.exception()}",
                exc_info=task.exception(),
            )

    async def terminate(self) -> None:
        if self._closing:
            return
        self._closing = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.stt.close()
        await self.engine.close()
        self._initialized = False
        logger.info(f"[{self.call_id}] Composed pipeline terminated")
