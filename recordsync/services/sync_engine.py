"""Recording list synchronization between the backend and the local cache."""

import asyncio
import logging
from uuid import UUID

from pydantic import TypeAdapter

from recordsync.models.schemas import (
    HYDRATABLE_STATUSES,
    Recording,
    RecordingStatus,
    RecordingSummariesResponse,
    RecordingSummary,
    RecordingsResponse,
    parse_status,
)
from recordsync.services.errors import NetworkError, NetworkServiceError
from recordsync.services.events import EventChannel
from recordsync.services.http_client import HTTPClient
from recordsync.services.local_cache import LocalCache

logger = logging.getLogger(__name__)

_FULL_LIST = TypeAdapter(list[Recording] | RecordingsResponse)
_SUMMARY_LIST = TypeAdapter(list[RecordingSummary] | RecordingSummariesResponse)


def merge_summary(existing: Recording | None, summary: RecordingSummary) -> Recording:
    """Fold a lightweight summary into the record we already hold.

    Mutable fields come from the summary. Status only moves forward along
    the stage order (or to ``failed``), and transcript/summary text already
    fetched is kept.
    """
    if existing is None:
        return summary.to_recording()

    update = {
        "title": summary.title,
        "created_at": summary.created_at,
    }
    if summary.duration is not None:
        update["duration"] = summary.duration
    if summary.file_size:
        update["file_size"] = summary.file_size
    if summary.status != existing.status and existing.status.can_advance_to(summary.status):
        update["status"] = summary.status
    return existing.model_copy(update=update)


class SyncEngine:
    """Owns the in-memory recording set and reconciles it with the backend.

    All mutations are applied on the event loop under one lock; network
    calls and cache writes happen outside it.
    """

    def __init__(self, http: HTTPClient, cache: LocalCache, events: EventChannel | None = None):
        self.http = http
        self.cache = cache
        self.events = events or EventChannel("recordings")
        self.stale = False
        self.last_error: str | None = None
        self._recordings: dict[UUID, Recording] = {}
        # id -> status the record had when its full content was last fetched
        self._hydrated: dict[UUID, RecordingStatus] = {}
        self._lock = asyncio.Lock()
        self._ticket = 0
        self._full_ticket = 0

    # --- Snapshot ---

    @property
    def recordings(self) -> list[Recording]:
        """Current recording set, newest first."""
        return sorted(self._recordings.values(), key=lambda r: r.created_at, reverse=True)

    def get(self, recording_id: UUID) -> Recording | None:
        return self._recordings.get(recording_id)

    def pending(self) -> list[Recording]:
        return [r for r in self._recordings.values() if not r.status.is_terminal]

    def needs_hydration(self) -> list[UUID]:
        """Ids whose stage promises content we have not fetched yet."""
        ids = []
        for recording in self._recordings.values():
            if recording.status not in HYDRATABLE_STATUSES:
                continue
            if self._hydrated.get(recording.id) == recording.status:
                continue
            missing_summary = recording.status == RecordingStatus.COMPLETED and not recording.summary
            if not recording.transcript or missing_summary:
                ids.append(recording.id)
        return ids

    def _publish(self, reason: str) -> None:
        self.events.publish({
            "type": "recordings",
            "reason": reason,
            "count": len(self._recordings),
            "stale": self.stale,
        })

    def _next_ticket(self) -> int:
        self._ticket += 1
        return self._ticket

    # --- Operations ---

    async def restore(self) -> list[Recording]:
        """Seed the in-memory set from the local cache."""
        cached = await self.cache.load()
        async with self._lock:
            self._recordings = {r.id: r for r in cached}
        self._publish("restore")
        return self.recordings

    async def list_full(self) -> list[Recording]:
        """Fetch every recording with content and replace the cache wholesale.

        On a network failure the cached snapshot is returned and ``stale``
        is set instead of raising.
        """
        ticket = self._next_ticket()
        try:
            payload = await self.http.request(
                "GET", "/recordings", requires_auth=True, response_model=_FULL_LIST
            )
        except NetworkError as e:
            logger.warning(f"Full list failed, showing cached data: {e}")
            self.stale = True
            self.last_error = str(e)
            cached = self.cache.snapshot()
            if cached:
                async with self._lock:
                    self._recordings = {r.id: r for r in cached}
            self._publish("stale")
            return cached
        except NetworkServiceError as e:
            self.last_error = str(e)
            raise

        remote = payload.recordings if isinstance(payload, RecordingsResponse) else payload
        async with self._lock:
            self._full_ticket = max(self._full_ticket, ticket)
            self._recordings = {r.id: r for r in remote}
            self.stale = False
            self.last_error = None
        await self.cache.replace_all(remote)
        logger.info(f"Loaded {len(remote)} recordings with full content")
        self._publish("full")
        return self.recordings

    async def list_summary(self, page: int = 1, page_size: int = 50) -> list[RecordingSummary]:
        """Fetch the lightweight projection and merge it by id."""
        ticket = self._next_ticket()
        payload = await self.http.request(
            "GET",
            "/recordings/summary",
            params={"page": page, "per_page": page_size},
            requires_auth=True,
            response_model=_SUMMARY_LIST,
        )
        summaries = payload.items if isinstance(payload, RecordingSummariesResponse) else payload

        async with self._lock:
            if ticket < self._full_ticket:
                logger.debug("Dropping summary merge superseded by a full list")
                return summaries
            for summary in summaries:
                self._recordings[summary.id] = merge_summary(self._recordings.get(summary.id), summary)
            self.stale = False
        logger.debug(f"Merged {len(summaries)} recording summaries")
        self._publish("summary")
        return summaries

    async def load_recent(self, limit: int = 5) -> list[RecordingSummary]:
        """First page of summaries, sized for a home screen."""
        return await self.list_summary(page=1, page_size=limit)

    async def get_detail(self, recording_id: UUID) -> Recording:
        """Fetch one full record; the remote copy replaces ours."""
        recording = await self.http.request(
            "GET", f"/recordings/{recording_id}", requires_auth=True, response_model=Recording
        )
        async with self._lock:
            self._recordings[recording.id] = recording
            self._hydrated[recording.id] = recording.status
        await self.cache.upsert(recording)
        self._publish("detail")
        return recording

    async def delete(self, recording_id: UUID) -> None:
        """Delete remotely first; local state changes only if that succeeds."""
        await self.http.request("DELETE", f"/recordings/{recording_id}", requires_auth=True)
        async with self._lock:
            self._recordings.pop(recording_id, None)
            self._hydrated.pop(recording_id, None)
        await self.cache.remove(recording_id)
        logger.info(f"Deleted recording {recording_id}")
        self._publish("delete")

    async def update_title(self, recording_id: UUID, title: str) -> bool:
        """Rename locally. The backend has no endpoint for this yet."""
        # TODO: call the server once the backend exposes a title update endpoint
        async with self._lock:
            recording = self._recordings.get(recording_id)
            if recording is None:
                return False
            recording = recording.model_copy(update={"title": title})
            self._recordings[recording_id] = recording
        await self.cache.upsert(recording)
        self._publish("title")
        return True

    async def add_uploaded(self, recording: Recording) -> None:
        async with self._lock:
            self._recordings[recording.id] = recording
        await self.cache.upsert(recording)
        self._publish("upload")

    async def apply_status_update(self, recording_id: UUID, status: str) -> Recording | None:
        """Handle an out-of-band status notification for one recording."""
        try:
            new_status = parse_status(status)
        except ValueError:
            logger.warning(f"Ignoring unknown status {status!r} for {recording_id}")
            return None

        async with self._lock:
            recording = self._recordings.get(recording_id)
            if recording is None:
                logger.warning(f"Status update for unknown recording {recording_id}")
                return None
            if recording.status != new_status and recording.status.can_advance_to(new_status):
                recording = recording.model_copy(update={"status": new_status})
                self._recordings[recording_id] = recording
        self._publish("status")

        if new_status in HYDRATABLE_STATUSES:
            try:
                recording = await self.get_detail(recording_id)
            except NetworkServiceError as e:
                logger.error(f"Could not load recording details for {recording_id}: {e}")
        return recording

    async def clear(self) -> None:
        """Forget every recording, locally and in the cache."""
        async with self._lock:
            self._recordings = {}
            self._hydrated = {}
            self.stale = False
            self.last_error = None
        await self.cache.clear()
        self._publish("clear")
