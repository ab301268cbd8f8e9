import asyncio
from uuid import UUID

import pytest

from recordsync.client import RecordSyncClient
from recordsync.models.schemas import RecordingStatus
from recordsync.services.auth_session import AuthState
from recordsync.services.errors import Unauthorized
from recordsync.services.poll_scheduler import PollState

from tests.conftest import PASSWORD


async def _wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def test_login_upload_and_poll_to_completion(tmp_path, settings, backend):
    audio = tmp_path / "standup.m4a"
    audio.write_bytes(b"\x00\x01" * (1024 * 1024))
    progress = []

    async def scenario():
        client = RecordSyncClient(settings)
        try:
            assert await client.start() == AuthState.LOGGED_OUT
            assert client.http.is_connected

            await client.login("test@example.com", PASSWORD)
            assert client.auth.is_authenticated
            assert client.engine.recordings == []

            uploaded = await client.upload(audio, "Test", on_progress=progress.append)
            assert uploaded.status == RecordingStatus.TRANSCRIBING
            assert client.scheduler.state == PollState.ARMED
            assert client.engine.get(uploaded.id).status == RecordingStatus.TRANSCRIBING

            remote = backend.recordings[str(uploaded.id)]
            remote.update(status="completed", transcript="Morning everyone", summary="Standup notes")
            await _wait_until(lambda: not client.scheduler.is_armed)
            await _wait_until(lambda: len(backend.requests_to("GET", "/api/recordings/")) == 2)
            await asyncio.sleep(0.1)
            return uploaded.id, client.engine.get(uploaded.id)
        finally:
            await client.aclose()

    recording_id, recording = asyncio.run(scenario())
    assert isinstance(recording_id, UUID)
    assert recording.status == RecordingStatus.COMPLETED
    assert recording.transcript == "Morning everyone"
    assert recording.summary == "Standup notes"
    assert recording.file_size == 2 * 1024 * 1024
    assert progress[-1] == 1.0

    # One full list at login, one when polling wound down
    assert len(backend.requests_to("GET", "/api/recordings/")) == 2
    assert len(backend.requests_to("GET", f"/api/recordings/{recording_id}")) == 1


def test_restart_restores_session_and_cache(settings, backend):
    backend.add_recording("Kept")

    async def first_run():
        client = RecordSyncClient(settings)
        try:
            await client.start()
            await client.login("test@example.com", PASSWORD)
        finally:
            await client.aclose()

    async def second_run():
        client = RecordSyncClient(settings.model_copy(update={"dev_base_url": "http://127.0.0.1:1/api"}))
        try:
            state = await client.start()
            return state, [r.title for r in client.engine.recordings]
        finally:
            await client.aclose()

    asyncio.run(first_run())
    state, titles = asyncio.run(second_run())
    # Backend unreachable, so the saved token cannot be verified
    assert state == AuthState.LOGGED_OUT
    assert titles == ["Kept"]


def test_logout_clears_recordings(settings, backend):
    backend.add_recording("Private")

    async def scenario():
        client = RecordSyncClient(settings)
        try:
            await client.start()
            await client.login("test@example.com", PASSWORD)
            before = len(client.engine.recordings)
            await client.logout()
            return before, client.engine.recordings, client.auth.state
        finally:
            await client.aclose()

    before, after, state = asyncio.run(scenario())
    assert before == 1
    assert after == []
    assert state == AuthState.LOGGED_OUT


def test_unauthorized_stops_polling_before_the_error_returns(settings, backend):
    backend.add_recording("Busy", status="summarizing")

    async def scenario():
        client = RecordSyncClient(settings)
        try:
            await client.start()
            await client.login("test@example.com", PASSWORD)
            armed = client.scheduler.is_armed
            backend.overrides[("GET", "/api/recordings/")] = (401, {"detail": "Token expired"})
            with pytest.raises(Unauthorized):
                await client.refresh()
            return armed, client.scheduler.state, client.auth.state
        finally:
            await client.aclose()

    armed, poll_state, auth_state = asyncio.run(scenario())
    assert armed
    assert poll_state == PollState.IDLE
    assert auth_state == AuthState.LOGGED_OUT
