"""
Lifecycle event fan-out.

The session manager reports call-started, transcript, adaptation and
call-ended events here. Each report is scheduled as a background task and
returns immediately; persistence and notification failures are logged and
never reach the live call. Reports of one call are applied in the order they
were made.
"""

import asyncio
import json
import logging
from typing import Awaitable, Dict, Optional, Set

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.call_session import AdaptationEvent, CallSession, TranscriptEntry
from callbridge.services.call_store import CallStore
from callbridge.services.notifications import TelegramNotifier
from callbridge.services.summary import summarize_call

logger = logging.getLogger(LOGGER_NAME)


class LifecycleSink:
    def __init__(
        self,
        store: Optional[CallStore] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.store = store
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()
        self._call_locks: Dict[str, asyncio.Lock] = {}

    def call_started(self, session: CallSession) -> None:
        self._schedule(session.call_id, "call_started", self._record_start(session))

    def transcript(self, session: CallSession, entry: TranscriptEntry) -> None:
        self._schedule(session.call_id, "transcript", self._record_transcript(session, entry))

    def adaptation(self, session: CallSession, event: AdaptationEvent) -> None:
        self._schedule(session.call_id, "adaptation", self._record_adaptation(session, event))

    def call_ended(self, session: CallSession) -> None:
        self._schedule(session.call_id, "call_ended", self._record_end(session))

    async def drain(self) -> None:
        """Wait for every scheduled report to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, call_id: Optional[str], kind: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(self._guarded(call_id, kind, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, call_id: Optional[str], kind: str, coro: Awaitable[None]) -> None:
        lock = self._call_locks.setdefault(call_id or "", asyncio.Lock())
        async with lock:
            try:
                await coro
            except Exception as e:
                logger.error(f"[{call_id}] Failed to report {kind}: {e}", exc_info=True)
        if kind == "call_ended":
            self._call_locks.pop(call_id or "", None)

    async def _record_start(self, session: CallSession) -> None:
        if self.store is None or not session.call_id:
            return
        config = session.config
        await self.store.create_call(
            session.call_id,
            config.phone_number or "unknown",
            config.prompt,
            config.first_message,
            config.user_chat_id,
        )
        await self.store.update_call_status(
            session.call_id,
            "in-progress",
            started_at=session.started_at.isoformat() if session.started_at else None,
        )
        await self.store.update_call_state(
            session.call_id,
            "call_started",
            {"stream_sid": session.stream_id, "default_config": config.is_default},
        )

    async def _record_transcript(self, session: CallSession, entry: TranscriptEntry) -> None:
        if self.store is None or not session.call_id:
            return
        await self.store.add_transcript(
            session.call_id, entry.speaker, entry.text, entry.interaction_count
        )

    async def _record_adaptation(self, session: CallSession, event: AdaptationEvent) -> None:
        if self.store is not None and session.call_id:
            await self.store.update_call_state(
                session.call_id,
                f"{event.kind}_changed",
                {
                    "name": event.name,
                    "reason": event.reason,
                    "interaction_count": event.interaction_count,
                },
            )
        if self.notifier is not None:
            await self.notifier.notify_adaptation(
                self.notifier.recipient(session.config.user_chat_id),
                session.call_id,
                event.name,
                event.kind,
            )

    async def _record_end(self, session: CallSession) -> None:
        summary = summarize_call(session.transcript, session.duration_seconds)
        logger.info(
            f"[{session.call_id}] Call ended ({session.end_reason}). "
            f"Duration: {summary.duration_seconds}s, Transcripts: {summary.total_messages}"
        )
        if self.store is not None and session.call_id:
            await self.store.update_call_status(
                session.call_id,
                "completed",
                ended_at=session.ended_at.isoformat() if session.ended_at else None,
                duration=summary.duration_seconds,
                call_summary=summary.summary,
                ai_analysis=json.dumps(summary.analysis),
            )
            await self.store.update_call_state(
                session.call_id,
                "call_ended",
                {
                    "end_reason": session.end_reason,
                    "duration": summary.duration_seconds,
                    "total_interactions": session.interaction_count,
                },
            )
        if self.notifier is not None:
            await self.notifier.notify_summary(
                self.notifier.recipient(session.config.user_chat_id),
                session.call_id,
                session.config.phone_number,
                summary,
            )
