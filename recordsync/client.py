"""Composition root: builds the sync engine components and owns their lifecycle."""

import logging
from pathlib import Path
from uuid import UUID

from recordsync.config import Settings
from recordsync.db.database import Database
from recordsync.db.kv_store import KeyValueStore
from recordsync.models.schemas import Recording, User
from recordsync.services.auth_session import AuthSessionManager, AuthState
from recordsync.services.errors import NetworkServiceError
from recordsync.services.events import EventChannel
from recordsync.services.http_client import HTTPClient
from recordsync.services.local_cache import LocalCache
from recordsync.services.poll_scheduler import PollScheduler
from recordsync.services.prompt_templates import PromptTemplateManager
from recordsync.services.sync_engine import SyncEngine
from recordsync.services.token_store import TokenStore
from recordsync.services.upload import ProgressCallback, UploadPipeline, UploadTask

logger = logging.getLogger(__name__)


class RecordSyncClient:
    """Wires TokenStore, HTTPClient, UploadPipeline, SyncEngine, PollScheduler,
    PromptTemplateManager and AuthSessionManager together.

    Construct once at startup, ``await start()``, and ``await aclose()`` at
    shutdown.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db = Database(str(Path(settings.db_path).expanduser()))
        self.unauthorized = EventChannel("unauthorized")
        self.events = EventChannel("engine")

        # Built in start(), once the database exists
        self.token_store: TokenStore | None = None
        self.http: HTTPClient | None = None
        self.cache: LocalCache | None = None
        self.engine: SyncEngine | None = None
        self.uploads: UploadPipeline | None = None
        self.scheduler: PollScheduler | None = None
        self.auth: AuthSessionManager | None = None
        self.templates: PromptTemplateManager | None = None

    async def start(self) -> AuthState:
        await self.db.init()
        kv = KeyValueStore(self.db.session_factory)
        s = self.settings

        self.token_store = TokenStore(kv)
        self.http = HTTPClient(s.base_url, self.token_store, self.unauthorized,
                               timeout=s.request_timeout_secs)
        self.cache = LocalCache(kv)
        self.engine = SyncEngine(self.http, self.cache, events=self.events)
        self.uploads = UploadPipeline(self.http, max_bytes=s.max_upload_bytes,
                                      chunk_size=s.upload_chunk_size,
                                      timeout=s.upload_timeout_secs)
        self.scheduler = PollScheduler(self.engine, interval=s.poll_interval_secs,
                                       debounce=s.poll_debounce_secs,
                                       max_backoff=s.poll_max_backoff_secs,
                                       page_size=s.summary_page_size)
        self.auth = AuthSessionManager(self.http, self.token_store, self.unauthorized,
                                       events=self.events)
        self.templates = PromptTemplateManager(self.http, events=self.events)

        await self.token_store.load()
        await self.engine.restore()

        self.unauthorized.subscribe(self._stop_polling)

        await self.http.check_connection()
        state = await self.auth.start()
        if state == AuthState.LOGGED_IN:
            await self._refresh_quietly()
            await self._load_templates_quietly()
        logger.info(f"RecordSync client started ({s.environment}, {s.base_url})")
        return state

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except NetworkServiceError as e:
            logger.error(f"Initial recording refresh failed: {e}")

    async def _load_templates_quietly(self) -> None:
        try:
            await self.templates.ensure_loaded()
        except NetworkServiceError as e:
            logger.warning(f"Prompt templates unavailable: {e}")

    def _stop_polling(self, event: dict) -> None:
        self.scheduler.stop()

    # --- Session ---

    async def login(self, email: str, password: str) -> User:
        user = await self.auth.login(email, password)
        await self._refresh_quietly()
        await self._load_templates_quietly()
        return user

    async def register(self, username: str, email: str, password: str) -> User:
        user = await self.auth.register(username, email, password)
        await self._refresh_quietly()
        await self._load_templates_quietly()
        return user

    async def logout(self) -> None:
        self.scheduler.stop()
        await self.auth.logout()
        await self.engine.clear()
        self.templates.clear()

    # --- Recordings ---

    async def refresh(self) -> list[Recording]:
        """Full refresh; arms polling if anything is still processing."""
        recordings = await self.engine.list_full()
        self.scheduler.observe(recordings)
        return recordings

    async def upload(
        self,
        path: str | Path,
        title: str,
        prompt_template_id: int | None = None,
        on_progress: ProgressCallback | None = None,
        task: UploadTask | None = None,
    ) -> Recording:
        """Upload, track and start polling. Uses the default template when none is given."""
        if prompt_template_id is None and self.templates.default_template is not None:
            prompt_template_id = self.templates.default_template.id
        recording = await self.uploads.upload(
            path, title, prompt_template_id=prompt_template_id,
            on_progress=on_progress, task=task,
        )
        await self.engine.add_uploaded(recording)
        self.scheduler.arm()
        await self.scheduler.tick()
        return recording

    async def delete(self, recording_id: UUID) -> None:
        await self.engine.delete(recording_id)

    async def update_title(self, recording_id: UUID, title: str) -> bool:
        return await self.engine.update_title(recording_id, title)

    async def apply_status_update(self, recording_id: UUID, status: str) -> Recording | None:
        recording = await self.engine.apply_status_update(recording_id, status)
        self.scheduler.observe(self.engine.recordings)
        return recording

    # --- Shutdown ---

    async def aclose(self) -> None:
        if self.scheduler:
            await self.scheduler.aclose()
        self.unauthorized.unsubscribe(self._stop_polling)
        if self.auth:
            await self.auth.stop()
        if self.http:
            self.http.close()
        await self.db.dispose()
        logger.info("RecordSync client stopped")
