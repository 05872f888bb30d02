"""
SQLite-backed key-value blob store for chat snapshots.
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

import aiosqlite
from pydantic import ValidationError

from merkle_chat.models import Message, SessionSnapshot, StoredChatData

logger = logging.getLogger(__name__)

STORAGE_KEY = "merkle_chat_messages"
MAX_STORED_MESSAGES = 100
MAX_SNAPSHOT_AGE = timedelta(days=7)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Stores the most recent chat snapshot under a single key.

    Snapshots older than seven days are treated as absent and removed on
    load. Writes are serialised so the last save() always wins.
    """

    def __init__(self, path, clock: Clock = _utcnow):
        self.path = Path(path)
        self._clock = clock
        self._write_lock = asyncio.Lock()

    def _connect(self):
        return aiosqlite.connect(self.path)

    async def init(self):
        """Create the backing table."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()

    async def _put(self, value: str):
        async with self._connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                (STORAGE_KEY, value)
            )
            await db.commit()

    async def _get(self) -> Optional[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT value FROM kv WHERE key = ?",
                (STORAGE_KEY,)
            )
            row = await cursor.fetchone()
        return row[0] if row else None

    async def save(self, messages: Iterable[Message], session_id: Optional[str] = None):
        """Save the last MAX_STORED_MESSAGES messages with a fresh timestamp."""
        data = StoredChatData(
            messages=list(messages)[-MAX_STORED_MESSAGES:],
            last_updated=self._clock(),
            session_id=session_id,
        )
        async with self._write_lock:
            await self._put(data.model_dump_json())

    async def load(self) -> Optional[StoredChatData]:
        raw = await self._get()
        if raw is None:
            return None

        try:
            data = StoredChatData.model_validate_json(raw)
        except ValidationError:
            logger.warning("Stored chat snapshot is corrupt; clearing it")
            await self.clear()
            return None

        if data.last_updated < self._clock() - MAX_SNAPSHOT_AGE:
            logger.info("Stored chat snapshot is older than %s; clearing it", MAX_SNAPSHOT_AGE)
            await self.clear()
            return None
        return data

    async def clear(self):
        async with self._write_lock:
            async with self._connect() as db:
                await db.execute("DELETE FROM kv WHERE key = ?", (STORAGE_KEY,))
                await db.commit()

    async def export_json(self) -> Optional[str]:
        data = await self.load()
        if data is None:
            return None
        return json.dumps(json.loads(data.model_dump_json()), indent=2)

    async def import_json(self, raw: str) -> bool:
        """Validate and store an exported snapshot. Returns False if invalid."""
        try:
            data = StoredChatData.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Failed to import messages: %s", e.error_count())
            return False
        if any(not m.text for m in data.messages):
            logger.error("Failed to import messages: empty message text")
            return False
        await self.save(data.messages, data.session_id)
        return True


class SnapshotWriter:
    """Session listener that persists messages whenever they change.

    Each change schedules a background save. The save reads the newest
    snapshot at write time, so bursts of changes collapse safely.
    """

    def __init__(self, store: MessageStore, get_snapshot: Callable[[], SessionSnapshot]):
        self.store = store
        self._get_snapshot = get_snapshot
        self._last_ids: tuple = ()
        self._pending: set[asyncio.Task] = set()

    def __call__(self, snapshot: SessionSnapshot) -> None:
        ids = tuple(m.id for m in snapshot.messages)
        if ids == self._last_ids:
            return
        self._last_ids = ids
        if not ids:
            return
        task = asyncio.create_task(self._write())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self):
        snapshot = self._get_snapshot()
        try:
            await self.store.save(snapshot.messages, snapshot.session_id)
        except Exception:
            logger.exception("Failed to persist chat snapshot")

    async def flush(self):
        """Wait for scheduled writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
