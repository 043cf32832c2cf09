"""
Call session state machine.

A CallSessionManager owns exactly one call from the moment its media stream
opens until it ends. It relays line audio to the voice backend, routes
synthesized audio through the PlaybackSequencer, lets the
InterruptionDetector cut playback on barge-in and reports lifecycle events.

States: AWAITING_STREAM -> STREAMING (open, at most once) -> ENDED (close,
terminal). Events arriving in the wrong state are dropped, never raised.

Failure policy:
- backend initialization or reply failures play the apology utterance and
  keep the call open
- a reply that does not start within the reply timeout is abandoned; its
  audio is dropped if it arrives later and the apology is played instead
- a transport failure ends only this call
- persistence and notification never block the relay; see LifecycleSink
"""

import asyncio
import logging
from typing import Optional, Set

from callbridge.agent.base import SynthesizedChunk, VoiceBackendAdapter
from callbridge.agent.fallback import ApologySpeaker
from callbridge.config.constants import (
    APOLOGY_MESSAGE,
    CLOSE_GRACE_SECONDS,
    LOGGER_NAME,
    MIN_INTERRUPTION_CHARS,
    REPLY_TIMEOUT_SECONDS,
    SPEAKER_AI,
    SPEAKER_USER,
)
from callbridge.errors import BackendInitError, TransportError
from callbridge.models.call_session import AdaptationEvent, CallSession, CallState, utcnow
from callbridge.models.registry import SessionRegistry
from callbridge.services.audio_channel import AudioFrameChannel
from callbridge.services.lifecycle import LifecycleSink
from callbridge.session.interruption import InterruptionDetector
from callbridge.session.playback import PlaybackSequencer

logger = logging.getLogger(LOGGER_NAME)


class CallSessionManager:
    def __init__(
        self,
        channel: AudioFrameChannel,
        adapter: VoiceBackendAdapter,
        registry: SessionRegistry,
        sink: Optional[LifecycleSink] = None,
        apology_speaker: Optional[ApologySpeaker] = None,
        reply_timeout: float = REPLY_TIMEOUT_SECONDS,
        close_grace: float = CLOSE_GRACE_SECONDS,
        interruption_threshold: int = MIN_INTERRUPTION_CHARS,
    ):
        self.channel = channel
        self.adapter = adapter
        self.registry = registry
        self.sink = sink or LifecycleSink()
        self.apology_speaker = apology_speaker
        self.reply_timeout = reply_timeout
        self.close_grace = close_grace

        self.session = CallSession()
        self.sequencer = PlaybackSequencer(channel, self.session.pending_marks)
        self.detector = InterruptionDetector(
            channel, self.sequencer, self.session.pending_marks, threshold=interruption_threshold
        )

        self._closing = False
        self._close_requested: Optional[str] = None
        self._close_timer: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._watchdog_token: Optional[int] = None
        self._abandoned_tokens: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.initialization: Optional[asyncio.Task] = None

        adapter.use_index_allocator(self.sequencer.allocate_index)
        adapter.on_synthesized_chunk(self._on_chunk)
        adapter.on_utterance_fragment(self.on_fragment)
        adapter.on_utterance(self._on_recognized)
        adapter.on_interruption_signal(self._on_backend_interruption)
        adapter.on_adaptation(self._on_adaptation)
        adapter.on_agent_text(self._on_agent_text)
        adapter.on_failure(self._on_backend_failure)

    @property
    def state(self) -> CallState:
        return self.session.state

    @property
    def call_id(self) -> Optional[str]:
        return self.session.call_id

    @property
    def close_pending(self) -> bool:
        return self._close_requested is not None

    async def open(self, stream_id: str, call_id: str) -> None:
        """
        Handle stream-open: bind the stream, load the call's configuration and
        start bringing the voice backend up. A second open is ignored.

        Returns as soon as the session is bound; the backend comes up in
        ``self.initialization`` so the stream keeps being read meanwhile.
        Frames arriving before the backend is ready are dropped and counted.
        """
        if self.session.state != CallState.AWAITING_STREAM:
            logger.warning(
                f"[{self.call_id}] Ignoring repeated stream open "
                f"(stream={stream_id}, call={call_id}, state={self.session.state.value})"
            )
            return

        self.session.stream_id = stream_id
        self.session.call_id = call_id
        self.session.state = CallState.STREAMING
        self.session.started_at = utcnow()
        self.channel.stream_id = stream_id
        self.session.config = self.registry.config_for(call_id)
        self.registry.attach(call_id, self)
        self.adapter.call_id = call_id
        logger.info(f"[{call_id}] Stream {stream_id} opened")
        self.sink.call_started(self.session)
        self.initialization = self._spawn(self._initialize_backend())

    async def _initialize_backend(self) -> None:
        try:
            await self.adapter.initialize(self.session.config)
        except BackendInitError as e:
            logger.error(f"[{self.call_id}] Voice backend failed to initialize: {e}")
            await self._play_apology()
            return
        logger.info(f"[{self.call_id}] Voice backend ready")

    async def on_media_frame(self, audio: bytes) -> None:
        if self.session.state != CallState.STREAMING or not self.adapter.initialized:
            self.channel.frames_dropped += 1
            return
        await self.adapter.send_audio(audio)

    async def on_utterance(self, text: str) -> None:
        """Forward one finished caller utterance to the backend."""
        if self.session.state != CallState.STREAMING or not self.adapter.initialized:
            return
        token = self._record_user_utterance(text)
        await self.adapter.submit_utterance(text, token)
        self._arm_watchdog(token)

    async def _on_recognized(self, text: str) -> None:
        if not self.adapter.autonomous_replies:
            await self.on_utterance(text)
            return
        if self.session.state != CallState.STREAMING:
            return
        token = self._record_user_utterance(text)
        await self.adapter.acknowledge_utterance(token)
        self._arm_watchdog(token)

    def _record_user_utterance(self, text: str) -> int:
        token = self.session.interaction_count
        self.session.interaction_count += 1
        entry = self.session.add_transcript(SPEAKER_USER, text, token)
        logger.info(f"[{self.call_id}] Interaction {token} - caller: {text}")
        self.sink.transcript(self.session, entry)
        return token

    async def on_fragment(self, text: str) -> bool:
        """Check a partial utterance for barge-in."""
        if self.session.state != CallState.STREAMING:
            return False
        try:
            interrupted = await self.detector.on_fragment(text)
        except TransportError as e:
            self._transport_failed(e)
            return False
        if interrupted:
            await self.adapter.interrupt()
            self._close_after_interruption()
        return interrupted

    async def _on_backend_interruption(self) -> None:
        if self.session.state != CallState.STREAMING:
            return
        try:
            interrupted = await self.detector.on_backend_interruption()
        except TransportError as e:
            self._transport_failed(e)
            return
        if interrupted:
            self._close_after_interruption()

    async def on_mark_ack(self, label: str) -> None:
        if label not in self.session.pending_marks:
            logger.debug(f"[{self.call_id}] Ignoring unknown or repeated mark: {label}")
            return
        del self.session.pending_marks[label]
        if self._drained_for_close():
            logger.info(f"[{self.call_id}] Playback drained, completing close")
            await self.close(self._close_requested)

    def _drained_for_close(self) -> bool:
        return not self.session.pending_marks and self._close_requested is not None

    def _close_after_interruption(self) -> None:
        # Cleared marks are never acknowledged. Detached, as the caller may be
        # a backend task that close() cancels.
        if self._drained_for_close() and not self._closing:
            logger.info(f"[{self.call_id}] Playback cleared, completing close")
            self._spawn(self.close(self._close_requested))

    async def request_close(self, reason: str) -> None:
        """
        Close once outstanding playback is acknowledged, or after the grace
        period, whichever comes first.
        """
        if self._closing or self._close_requested is not None:
            return
        if not self.session.pending_marks:
            await self.close(reason)
            return
        self._close_requested = reason
        logger.info(
            f"[{self.call_id}] Close deferred until {len(self.session.pending_marks)} mark(s) drain"
        )
        self._close_timer = self._spawn(self._close_after_grace(reason))

    async def _close_after_grace(self, reason: str) -> None:
        await asyncio.sleep(self.close_grace)
        logger.warning(f"[{self.call_id}] Marks not drained after {self.close_grace}s, closing")
        await self.close(reason)

    async def close(self, reason: str = "stream stopped") -> None:
        """Terminate the session; repeated calls have no effect."""
        if self._closing:
            return
        self._closing = True
        current = asyncio.current_task()

        self._disarm_watchdog()
        self.sequencer.reset()
        self.session.ended_at = utcnow()
        self.session.end_reason = reason
        was_streaming = self.session.state == CallState.STREAMING
        self.session.state = CallState.ENDED

        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self.adapter.terminate()
        except Exception as e:
            logger.error(f"[{self.call_id}] Error terminating voice backend: {e}", exc_info=True)

        if self.call_id:
            self.registry.discard(self.call_id)
        if was_streaming:
            self.sink.call_ended(self.session)
        logger.info(f"[{self.call_id}] Session closed: {reason}")

    async def _on_chunk(self, chunk: SynthesizedChunk) -> None:
        if self.session.state != CallState.STREAMING:
            return
        token = chunk.correlation_token
        try:
            if token is not None and token in self._abandoned_tokens:
                logger.debug(f"[{self.call_id}] Dropping audio of abandoned reply {token}")
                await self.sequencer.discard(chunk.response_index)
                return
            if chunk.final:
                await self.sequencer.complete(chunk.response_index)
                return
            if not chunk.audio:
                return
            if token is not None and self._watchdog_token is not None and token >= self._watchdog_token:
                self._disarm_watchdog()
            await self.sequencer.enqueue(chunk.response_index, chunk.audio)
        except TransportError as e:
            self._transport_failed(e)

    async def _on_agent_text(self, text: str, correlation_token: Optional[int]) -> None:
        if self.session.state != CallState.STREAMING:
            return
        if correlation_token is None:
            correlation_token = self.session.interaction_count
        entry = self.session.add_transcript(SPEAKER_AI, text, correlation_token)
        logger.info(f"[{self.call_id}] Interaction {correlation_token} - agent: {text}")
        self.sink.transcript(self.session, entry)

    async def _on_adaptation(self, event: AdaptationEvent) -> None:
        if event.interaction_count is None:
            event.interaction_count = self.session.interaction_count
        logger.info(f"[{self.call_id}] Adaptation: {event.kind} -> {event.name}")
        self.sink.adaptation(self.session, event)

    async def _on_backend_failure(self, reason: str) -> None:
        if self.session.state != CallState.STREAMING:
            return
        logger.error(f"[{self.call_id}] Voice backend failed: {reason}")
        self._spawn(self._play_apology())

    def _arm_watchdog(self, token: int) -> None:
        self._disarm_watchdog()
        self._watchdog_token = token
        self._watchdog = self._spawn(self._reply_watchdog(token))

    def _disarm_watchdog(self) -> None:
        if self._watchdog and not self._watchdog.done() and self._watchdog is not asyncio.current_task():
            self._watchdog.cancel()
        self._watchdog = None
        self._watchdog_token = None

    async def _reply_watchdog(self, token: int) -> None:
        await asyncio.sleep(self.reply_timeout)
        if self.session.state != CallState.STREAMING:
            return
        logger.warning(
            f"[{self.call_id}] No reply for interaction {token} within {self.reply_timeout}s"
        )
        self._abandoned_tokens.add(token)
        self._watchdog = None
        self._watchdog_token = None
        await self._play_apology()

    async def _play_apology(self) -> None:
        try:
            if await self.adapter.speak(APOLOGY_MESSAGE):
                return
            if self.apology_speaker is None:
                logger.warning(f"[{self.call_id}] No speech synthesis available for the apology")
                return
            await self.apology_speaker.play(self.sequencer, self.sequencer.allocate_index())
        except TransportError as e:
            self._transport_failed(e)

    def _transport_failed(self, error: TransportError) -> None:
        if self._closing:
            return
        logger.error(f"[{self.call_id}] Media transport failed: {error}")
        self._spawn(self.close("transport error"))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[{self.call_id}] Session task failed: {task.exception()}",
                exc_info=task.exception(),
            )
