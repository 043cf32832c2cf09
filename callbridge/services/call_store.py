"""
Call persistence layer.

Stores calls, their transcripts and their state changes in SQLite. Every
operation runs in the default executor so the event loop serving live audio
is never blocked on disk I/O. Errors propagate to the caller; the lifecycle
sink decides how they are reported.
"""

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from callbridge.config.constants import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

_CREATE_TABLES_SQL = [
    """
    CREATE TABLE IF NOT EXISTS calls (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        call_sid TEXT UNIQUE NOT NULL,
        phone_number TEXT NOT NULL,
        prompt TEXT NOT NULL,
        first_message TEXT NOT NULL,
        user_chat_id TEXT,
        status TEXT DEFAULT 'initiated',
        created_at TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT,
        duration INTEGER,
        call_summary TEXT,
        ai_analysis TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transcripts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        call_sid TEXT NOT NULL,
        speaker TEXT NOT NULL,
        message TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        interaction_count INTEGER,
        FOREIGN KEY (call_sid) REFERENCES calls (call_sid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS call_states (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        call_sid TEXT NOT NULL,
        state TEXT NOT NULL,
        state_data TEXT,
        timestamp TEXT NOT NULL,
        FOREIGN KEY (call_sid) REFERENCES calls (call_sid)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transcripts_call_sid ON transcripts (call_sid)",
    "CREATE INDEX IF NOT EXISTS idx_call_states_call_sid ON call_states (call_sid)",
]

# Columns update_call_status may set besides the status itself
_STATUS_FIELDS = ("started_at", "ended_at", "duration", "call_summary", "ai_analysis")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CallStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _execute(self, sql: str, params=()) -> int:
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()

    def _fetch(self, sql: str, params=()) -> List[Dict[str, Any]]:
        with self._lock:
            conn = self._connect()
            try:
                return [dict(row) for row in conn.execute(sql, params).fetchall()]
            finally:
                conn.close()

    def _init_sync(self) -> None:
        directory = Path(self.db_path).parent
        directory.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self._connect()
            try:
                for statement in _CREATE_TABLES_SQL:
                    conn.execute(statement)
                conn.commit()
            finally:
                conn.close()
        self._initialized = True

    async def initialize(self) -> None:
        await self._run(self._init_sync)
        logger.info(f"Call store initialized at {self.db_path}")

    async def create_call(
        self,
        call_sid: str,
        phone_number: str,
        prompt: str,
        first_message: str,
        user_chat_id: Optional[str] = None,
    ) -> bool:
        """
        Record a new call. Returns False when the call already exists.
        """
        rows = await self._run(
            self._execute,
            """
            INSERT OR IGNORE INTO calls
                (call_sid, phone_number, prompt, first_message, user_chat_id, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'initiated', ?)
            """,
            (call_sid, phone_number, prompt, first_message, user_chat_id, _now()),
        )
        return rows > 0

    async def update_call_status(self, call_sid: str, status: str, **fields: Any) -> bool:
        unknown = set(fields) - set(_STATUS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown call fields: {', '.join(sorted(unknown))}")
        assignments = ["status = ?"] + [f"{name} = ?" for name in fields]
        params = [status] + list(fields.values()) + [call_sid]
        rows = await self._run(
            self._execute,
            f"UPDATE calls SET {', '.join(assignments)} WHERE call_sid = ?",
            tuple(params),
        )
        return rows > 0

    async def add_transcript(
        self, call_sid: str, speaker: str, message: str, interaction_count: Optional[int]
    ) -> None:
        await self._run(
            self._execute,
            """
            INSERT INTO transcripts (call_sid, speaker, message, timestamp, interaction_count)
            VALUES (?, ?, ?, ?, ?)
            """,
            (call_sid, speaker, message, _now(), interaction_count),
        )

    async def update_call_state(
        self, call_sid: str, state: str, state_data: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._run(
            self._execute,
            "INSERT INTO call_states (call_sid, state, state_data, timestamp) VALUES (?, ?, ?, ?)",
            (call_sid, state, json.dumps(state_data) if state_data is not None else None, _now()),
        )

    async def get_call(self, call_sid: str) -> Optional[Dict[str, Any]]:
        rows = await self._run(self._fetch, "SELECT * FROM calls WHERE call_sid = ?", (call_sid,))
        return rows[0] if rows else None

    async def get_call_transcripts(self, call_sid: str) -> List[Dict[str, Any]]:
        return await self._run(
            self._fetch,
            "SELECT * FROM transcripts WHERE call_sid = ? ORDER BY id ASC",
            (call_sid,),
        )

    async def get_call_states(self, call_sid: str) -> List[Dict[str, Any]]:
        rows = await self._run(
            self._fetch,
            "SELECT * FROM call_states WHERE call_sid = ? ORDER BY id ASC",
            (call_sid,),
        )
        for row in rows:
            if row.get("state_data"):
                row["state_data"] = json.loads(row["state_data"])
        return rows

    async def list_calls(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent calls first, each with its transcript count."""
        return await self._run(
            self._fetch,
            """
            SELECT c.*, COUNT(t.id) AS transcript_count
            FROM calls c
            LEFT JOIN transcripts t ON c.call_sid = t.call_sid
            GROUP BY c.id
            ORDER BY c.created_at DESC
            LIMIT ?
            """,
            (limit,),
        )
