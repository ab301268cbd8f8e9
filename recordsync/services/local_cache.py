"""Offline cache of the last known recording set."""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

from pydantic import TypeAdapter, ValidationError

from recordsync.db.kv_store import KeyValueStore
from recordsync.models.schemas import CacheEntry, Recording

logger = logging.getLogger(__name__)

RECORDINGS_KEY = "saved_recordings"

_ENTRIES = TypeAdapter(list[CacheEntry])


class LocalCache:
    """Key-by-id store of Recording snapshots, persisted as one serialized list.

    Written only by the SyncEngine. Reads always come back sorted by
    creation time, newest first.
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv
        self._entries: dict[UUID, CacheEntry] = {}
        self._write_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, recording_id: UUID) -> bool:
        return recording_id in self._entries

    async def load(self) -> list[Recording]:
        raw = await self._kv.get(RECORDINGS_KEY)
        if not raw:
            self._entries = {}
            return []
        try:
            entries = _ENTRIES.validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable recording cache: {e}")
            self._entries = {}
            return []
        self._entries = {entry.recording.id: entry for entry in entries}
        logger.info(f"Loaded {len(self._entries)} recordings from local cache")
        return self.snapshot()

    def entries(self) -> list[CacheEntry]:
        return sorted(self._entries.values(), key=lambda e: e.recording.created_at, reverse=True)

    def snapshot(self) -> list[Recording]:
        return [entry.recording for entry in self.entries()]

    def get(self, recording_id: UUID) -> Recording | None:
        entry = self._entries.get(recording_id)
        return entry.recording if entry else None

    async def replace_all(self, recordings: list[Recording]) -> None:
        now = datetime.now(timezone.utc)
        self._entries = {r.id: CacheEntry(recording=r, written_at=now) for r in recordings}
        await self._persist()

    async def upsert(self, recording: Recording) -> None:
        self._entries[recording.id] = CacheEntry(recording=recording)
        await self._persist()

    async def remove(self, recording_id: UUID) -> None:
        if self._entries.pop(recording_id, None) is not None:
            await self._persist()

    async def clear(self) -> None:
        self._entries = {}
        async with self._write_lock:
            await self._kv.delete(RECORDINGS_KEY)

    async def _persist(self) -> None:
        # Serialize at write time so the last writer stores the newest state
        async with self._write_lock:
            await self._kv.set(RECORDINGS_KEY, _ENTRIES.dump_json(self.entries()).decode("utf-8"))
