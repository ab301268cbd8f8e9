"""RecordSync local bridge: FastAPI application.

Runs the sync engine in-process and exposes its current state plus an SSE
event stream to the UI process over localhost.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from recordsync.client import RecordSyncClient
from recordsync.config import Settings, settings as default_settings
from recordsync.models.schemas import (
    LoginBody,
    PromptTemplate,
    PromptTemplateRequest,
    Recording,
    RecordingListResponse,
    RegisterBody,
    SessionStateResponse,
    TemplateListResponse,
    TitleUpdateRequest,
    UploadRequest,
)
from recordsync.services.errors import (
    ApiError,
    ClientError,
    Forbidden,
    NetworkServiceError,
    TemplateNotEditable,
    Unauthorized,
    UploadCancelled,
    UploadValidationError,
)

logger = logging.getLogger("recordsync")


def _http_error(error: Exception) -> HTTPException:
    """Map a classified engine error onto a bridge HTTP status."""
    if isinstance(error, Unauthorized):
        return HTTPException(status_code=401, detail=str(error))
    if isinstance(error, (Forbidden, TemplateNotEditable)):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, (ApiError, ClientError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, UploadValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, UploadCancelled):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Client startup and shutdown."""
        logger.info("Starting RecordSync bridge")
        client = RecordSyncClient(app_settings)
        await client.start()
        app.state.client = client

        yield

        logger.info("Shutting down RecordSync bridge")
        await client.aclose()

    app = FastAPI(
        title="RecordSync Bridge",
        description="Local bridge exposing the recording sync engine to the UI",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_client(request: Request) -> RecordSyncClient:
        return request.app.state.client

    def session_state(client: RecordSyncClient) -> SessionStateResponse:
        return SessionStateResponse(
            state=client.auth.state.value,
            user=client.auth.current_user,
            error_message=client.auth.error_message,
        )

    def recording_list(client: RecordSyncClient) -> RecordingListResponse:
        return RecordingListResponse(
            recordings=client.engine.recordings,
            stale=client.engine.stale,
            polling=client.scheduler.is_armed,
        )

    # --- Session Endpoints ---

    @app.get("/api/session", response_model=SessionStateResponse)
    async def get_session(request: Request):
        """Current login state."""
        return session_state(get_client(request))

    @app.post("/api/session/login", response_model=SessionStateResponse)
    async def login(body: LoginBody, request: Request):
        client = get_client(request)
        try:
            await client.login(body.email, body.password)
        except NetworkServiceError as e:
            raise _http_error(e)
        return session_state(client)

    @app.post("/api/session/register", response_model=SessionStateResponse)
    async def register(body: RegisterBody, request: Request):
        client = get_client(request)
        try:
            await client.register(body.username, body.email, body.password)
        except NetworkServiceError as e:
            raise _http_error(e)
        return session_state(client)

    @app.post("/api/session/logout", response_model=SessionStateResponse)
    async def logout(request: Request):
        client = get_client(request)
        await client.logout()
        return session_state(client)

    # --- Recording Endpoints ---

    @app.get("/api/recordings", response_model=RecordingListResponse)
    async def list_recordings(request: Request):
        """Snapshot of the current recording set (no network call)."""
        return recording_list(get_client(request))

    @app.post("/api/recordings/refresh", response_model=RecordingListResponse)
    async def refresh_recordings(request: Request):
        """Full refresh; falls back to cached data when offline."""
        client = get_client(request)
        try:
            await client.refresh()
        except NetworkServiceError as e:
            raise _http_error(e)
        return recording_list(client)

    @app.post("/api/recordings/upload", response_model=Recording)
    async def upload_recording(body: UploadRequest, request: Request):
        client = get_client(request)
        try:
            return await client.upload(body.path, body.title, body.prompt_template_id)
        except (NetworkServiceError, UploadValidationError, UploadCancelled) as e:
            raise _http_error(e)

    @app.get("/api/recordings/{recording_id}", response_model=Recording)
    async def get_recording(recording_id: UUID, request: Request):
        """Full record, hydrated from the backend."""
        client = get_client(request)
        try:
            return await client.engine.get_detail(recording_id)
        except NetworkServiceError as e:
            cached = client.engine.get(recording_id)
            if cached is not None and not isinstance(e, (Unauthorized, Forbidden)):
                return cached
            raise _http_error(e)

    @app.delete("/api/recordings/{recording_id}")
    async def delete_recording(recording_id: UUID, request: Request):
        try:
            await get_client(request).delete(recording_id)
        except NetworkServiceError as e:
            raise _http_error(e)
        return {"status": "ok"}

    @app.patch("/api/recordings/{recording_id}", response_model=Recording)
    async def rename_recording(recording_id: UUID, body: TitleUpdateRequest, request: Request):
        """Rename locally; the backend has no title endpoint."""
        client = get_client(request)
        if not body.title.strip():
            raise HTTPException(status_code=422, detail="Title must not be empty")
        if not await client.update_title(recording_id, body.title.strip()):
            raise HTTPException(status_code=404, detail="Recording not found")
        return client.engine.get(recording_id)

    # --- Prompt Template Endpoints ---

    def template_list(client: RecordSyncClient) -> TemplateListResponse:
        default = client.templates.default_template
        return TemplateListResponse(
            templates=client.templates.templates,
            default_template_id=default.id if default else None,
        )

    @app.get("/api/templates", response_model=TemplateListResponse)
    async def list_templates(request: Request):
        """System and user templates, loaded on first use."""
        client = get_client(request)
        try:
            await client.templates.ensure_loaded()
        except NetworkServiceError as e:
            raise _http_error(e)
        return template_list(client)

    @app.post("/api/templates", response_model=PromptTemplate)
    async def create_template(body: PromptTemplateRequest, request: Request):
        try:
            return await get_client(request).templates.create(body.name, body.prompt, body.description)
        except NetworkServiceError as e:
            raise _http_error(e)

    @app.put("/api/templates/{template_id}", response_model=PromptTemplate)
    async def update_template(template_id: int, body: PromptTemplateRequest, request: Request):
        try:
            return await get_client(request).templates.update(
                template_id, body.name, body.prompt, body.description
            )
        except (NetworkServiceError, TemplateNotEditable) as e:
            raise _http_error(e)

    @app.delete("/api/templates/{template_id}")
    async def delete_template(template_id: int, request: Request):
        try:
            await get_client(request).templates.delete(template_id)
        except (NetworkServiceError, TemplateNotEditable) as e:
            raise _http_error(e)
        return {"status": "ok"}

    @app.post("/api/templates/{template_id}/default", response_model=TemplateListResponse)
    async def set_default_template(template_id: int, request: Request):
        client = get_client(request)
        try:
            await client.templates.set_default(template_id)
        except NetworkServiceError as e:
            raise _http_error(e)
        return template_list(client)

    # --- SSE Endpoint ---

    @app.get("/api/events")
    async def stream_events(request: Request):
        """Server-Sent Events endpoint for engine state changes."""
        channel = get_client(request).events
        queue = channel.add_listener()

        async def event_generator():
            try:
                while True:
                    try:
                        data = await asyncio.wait_for(queue.get(), timeout=30.0)
                        yield f"data: {json.dumps(data, default=str)}\n\n"
                    except asyncio.TimeoutError:
                        # Send keepalive comment
                        yield ": keepalive\n\n"
            finally:
                channel.remove_listener(queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # --- Health ---

    @app.get("/api/health")
    async def health(request: Request):
        """Health check endpoint."""
        client = get_client(request)
        return {
            "status": "ok",
            "backend_connected": client.http.is_connected,
            "auth_state": client.auth.state.value,
            "polling": client.scheduler.is_armed,
            "recordings": len(client.engine.recordings),
            "stale": client.engine.stale,
        }

    return app


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    uvicorn.run(
        create_app(default_settings),
        host=default_settings.api_host,
        port=default_settings.api_port,
    )


if __name__ == "__main__":
    main()
