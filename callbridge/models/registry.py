"""
Process-wide registry of calls.

The SessionRegistry maps a call identifier to the configuration provisioned
when the call was placed and, once its media stream is open, to the
CallSessionManager driving it. Entries are created at call initiation,
consulted on stream-open, removed when the call ends, and evicted after a TTL
when a stream never arrives.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional

from callbridge.config.constants import LOGGER_NAME
from callbridge.models.call_session import CallConfig

if TYPE_CHECKING:
    from callbridge.session.manager import CallSessionManager

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class RegistryEntry:
    call_id: str
    config: Optional[CallConfig] = None
    manager: Optional["CallSessionManager"] = None
    provisioned_at: float = 0.0


class SessionRegistry:
    """
    Thread-safe registry of provisioned configurations and active sessions.

    Every read and write goes through one lock, so concurrent insert, lookup
    and eviction never corrupt entries of unrelated calls. Sessions never
    touch each other's data through the registry; they only find their own
    entry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()

    def provision(self, call_id: str, config: CallConfig) -> None:
        """
        Store the configuration for a call that has been placed but whose
        media stream has not opened yet.
        """
        with self._lock:
            entry = self._entries.get(call_id)
            if entry and entry.manager is not None:
                logger.warning(f"Ignoring provisioning for call already streaming: {call_id}")
                return
            self._entries[call_id] = RegistryEntry(
                call_id=call_id, config=config, provisioned_at=self._clock()
            )
        logger.info(f"Provisioned configuration for call: {call_id}")

    def get(self, call_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.get(call_id)

    def config_for(self, call_id: str) -> CallConfig:
        """
        Return the provisioned configuration for a call, or the default
        configuration when none exists (never provisioned, or evicted).
        """
        entry = self.get(call_id)
        if entry is None or entry.config is None:
            logger.info(f"No provisioned configuration for call {call_id}, using defaults")
            return CallConfig.default()
        return entry.config

    def attach(self, call_id: str, manager: "CallSessionManager") -> None:
        """Bind the session manager that now owns this call."""
        with self._lock:
            entry = self._entries.get(call_id)
            if entry is None:
                entry = RegistryEntry(call_id=call_id, provisioned_at=self._clock())
                self._entries[call_id] = entry
            entry.manager = manager

    def discard(self, call_id: str) -> Optional[RegistryEntry]:
        """Remove a call entirely; called when its session ends."""
        with self._lock:
            entry = self._entries.pop(call_id, None)
        if entry:
            logger.info(f"Removed call from registry: {call_id}")
        return entry

    def evict_older_than(self, max_age: float, now: Optional[float] = None) -> int:
        """
        Evict provisioned configurations that never saw a stream-open.

        Args:
            max_age: Age in seconds after which an unattached entry is stale
            now: Clock reading to compare against; defaults to the registry clock

        Returns:
            Number of evicted entries
        """
        now = self._clock() if now is None else now
        with self._lock:
            stale = [
                call_id
                for call_id, entry in self._entries.items()
                if entry.manager is None and now - entry.provisioned_at > max_age
            ]
            for call_id in stale:
                del self._entries[call_id]
        if stale:
            logger.info(f"Evicted {len(stale)} stale call configuration(s): {', '.join(stale)}")
        return len(stale)

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.manager is not None)

    @property
    def provisioned_count(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.manager is None)

    async def run_eviction(self, interval: float, max_age: float) -> None:
        """Evict stale entries every ``interval`` seconds until cancelled."""
        logger.info(f"Registry eviction started (interval={interval}s, ttl={max_age}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                self.evict_older_than(max_age)
        except asyncio.CancelledError:
            logger.info("Registry eviction stopped")
            raise
