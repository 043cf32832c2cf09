"""
Ordered playback of synthesized audio.

The PlaybackSequencer receives synthesized audio tagged with a response index
and forwards it to the media channel in index order. Every chunk sent to the
line is followed by a mark; the mark label stays in the session's pending set
until the telephony side acknowledges it.

Ordering model:
- One response index is *current* at a time; its chunks go straight to the
  line in submission order.
- Indices handed out by allocate_index are *announced*. An index only starts
  playing once every lower announced index has completed or been cancelled,
  so a reply whose first sentence is still being synthesized is never
  overtaken by its second.
- Chunks of higher indices are buffered until the current index is completed
  (end-of-utterance marker), then flushed in ascending index order.
- Chunks of indices below the current one, or of indices that were cancelled
  by an interruption, are dropped silently. A cancelled index never plays,
  and nothing is ever reordered behind it.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set, Tuple

from callbridge.config.constants import LOGGER_NAME
from callbridge.services.audio_channel import AudioFrameChannel

logger = logging.getLogger(LOGGER_NAME)


class PlaybackSequencer:
    def __init__(self, channel: AudioFrameChannel, pending_marks: Dict[str, None]):
        """
        Args:
            channel: Media channel audio and marks are written to
            pending_marks: The session's pending mark set, shared with the
                session manager which removes acknowledged labels
        """
        self._channel = channel
        self._pending_marks = pending_marks
        self._lock = asyncio.Lock()
        self._current: Optional[int] = None
        # Indices below the floor are finished, cancelled or superseded
        self._floor = 0
        self._buffered: Dict[int, List[Tuple[str, bytes]]] = {}
        self._completed = set()
        self._cancelled: List[Tuple[int, int]] = []
        # Allocated indices not yet completed, cancelled or discarded
        self._announced: Set[int] = set()
        self._highest_seen = -1
        self._last_allocated = -1
        self.chunks_sent = 0
        self.chunks_dropped = 0

    @property
    def current_index(self) -> Optional[int]:
        return self._current

    @property
    def active_index(self) -> Optional[int]:
        """Lowest index still playing or waiting to play."""
        if self._current is not None:
            return self._current
        if self._buffered:
            return min(self._buffered)
        return None

    @property
    def pending_index(self) -> Optional[int]:
        """Lowest index that may still produce audio, announced ones included."""
        candidates = set(self._announced) | set(self._buffered)
        if self._current is not None:
            candidates.add(self._current)
        return min(candidates) if candidates else None

    def allocate_index(self) -> int:
        """Reserve a response index above everything seen so far."""
        index = max(self._highest_seen, self._floor - 1, self._last_allocated) + 1
        self._last_allocated = index
        self._announced.add(index)
        return index

    async def enqueue(self, response_index: int, audio: bytes) -> str:
        """
        Accept one chunk of synthesized audio.

        Returns:
            The mark label for this chunk. The label only enters the pending
            set once the chunk is actually sent; stale chunks get a label
            that is never sent.
        """
        label = uuid.uuid4().hex
        async with self._lock:
            if self._is_stale(response_index):
                self.chunks_dropped += 1
                logger.debug(f"Dropping stale audio for response index {response_index}")
                return label

            self._highest_seen = max(self._highest_seen, response_index)
            if self._current is None and not self._blocked(response_index):
                self._current = response_index

            if response_index == self._current:
                await self._send(label, audio)
            else:
                self._buffered.setdefault(response_index, []).append((label, audio))
        return label

    async def complete(self, response_index: int) -> None:
        """Signal that no more chunks will arrive for ``response_index``."""
        async with self._lock:
            if self._is_stale(response_index):
                return
            self._highest_seen = max(self._highest_seen, response_index)
            self._completed.add(response_index)
            if self._current is None and response_index not in self._buffered:
                # Nothing was ever synthesized for this index
                self._announced.discard(response_index)
                if not self._blocked(response_index):
                    self._floor = max(self._floor, response_index + 1)
                    self._completed.discard(response_index)
                await self._advance()
                return
            if response_index == self._current:
                await self._advance()
            elif response_index not in self._buffered:
                self._announced.discard(response_index)

    async def cancel(self, response_index: int) -> None:
        """
        Drop every buffered, not-yet-sent chunk for indices at or above
        ``response_index`` and refuse any later chunk for them. Repeating a
        cancel has no further effect.
        """
        async with self._lock:
            upper = max(self._highest_seen, self._last_allocated)
            if upper < response_index:
                return
            self._cancelled.append((response_index, upper))
            for index in [i for i in self._buffered if i >= response_index]:
                dropped = self._buffered.pop(index)
                self.chunks_dropped += len(dropped)
            self._completed = {i for i in self._completed if i < response_index}
            self._announced = {i for i in self._announced if i < response_index}
            if self._current is not None and self._current >= response_index:
                logger.info(f"Cancelled playback from response index {response_index}")
                self._current = None
                self._floor = max(self._floor, upper + 1)

    async def discard(self, response_index: int) -> None:
        """
        Give up on a single index: drop its audio, refuse later chunks for it
        and stop holding higher indices back behind it.
        """
        async with self._lock:
            if self._is_stale(response_index):
                return
            self._cancelled.append((response_index, response_index))
            self._announced.discard(response_index)
            self._completed.discard(response_index)
            self.chunks_dropped += len(self._buffered.pop(response_index, []))
            if self._current == response_index:
                self._current = None
                self._floor = max(self._floor, response_index + 1)
            logger.debug(f"Discarded response index {response_index}")
            await self._advance()

    def reset(self) -> None:
        """Forget all buffered audio; used at session termination."""
        self._buffered.clear()
        self._completed.clear()
        self._announced.clear()
        self._current = None
        self._pending_marks.clear()

    def _is_stale(self, index: int) -> bool:
        if index < self._floor:
            return True
        if self._current is not None and index < self._current:
            return True
        return any(lo <= index <= hi for lo, hi in self._cancelled)

    def _blocked(self, index: int) -> bool:
        return any(i < index for i in self._announced)

    async def _advance(self) -> None:
        """Move past completed indices and flush whatever may play next."""
        while True:
            if self._current is not None:
                if self._current not in self._completed:
                    return
                self._completed.discard(self._current)
                self._announced.discard(self._current)
                self._floor = max(self._floor, self._current + 1)
                self._current = None
            if not self._buffered:
                return
            upcoming = min(self._buffered)
            if self._blocked(upcoming):
                return
            self._current = upcoming
            for label, audio in self._buffered.pop(upcoming):
                await self._send(label, audio)

    async def _send(self, label: str, audio: bytes) -> None:
        self._pending_marks[label] = None
        try:
            await self._channel.play_audio(audio)
            await self._channel.send_mark(label)
        except Exception:
            self._pending_marks.pop(label, None)
            raise
        self.chunks_sent += 1
