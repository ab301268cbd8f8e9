import asyncio

import pytest

from recordsync.models.schemas import AuthSession
from recordsync.services.auth_session import AuthSessionManager, AuthState
from recordsync.services.errors import ApiError, Unauthorized

from tests.conftest import ACCESS_TOKEN, PASSWORD


def _manager(stack) -> AuthSessionManager:
    return AuthSessionManager(stack.http, stack.tokens, stack.unauthorized)


def test_login_stores_session(make_stack, backend):
    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            user = await auth.login("test@example.com", PASSWORD)
            return user, auth.state, await stack.tokens.load()

    user, state, saved = asyncio.run(scenario())
    assert user.username == "tester"
    assert state == AuthState.LOGGED_IN
    assert saved.access_token == ACCESS_TOKEN
    assert saved.user.email == "test@example.com"

    sent = backend.requests_to("POST", "/api/auth/login")[0]
    assert "Authorization" not in sent.headers


def test_wrong_password_keeps_logged_out(make_stack):
    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            with pytest.raises(ApiError, match="Incorrect email or password"):
                await auth.login("test@example.com", "wrong")
            return auth.state, auth.error_message, stack.tokens.get()

    state, error_message, session = asyncio.run(scenario())
    assert state == AuthState.LOGGED_OUT
    assert error_message == "Incorrect email or password"
    assert session is None


def test_register_logs_in(make_stack, backend):
    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            await auth.register("tester", "test@example.com", PASSWORD)
            return auth.is_authenticated

    assert asyncio.run(scenario())
    assert len(backend.requests_to("POST", "/api/auth/register")) == 1


def test_start_with_valid_saved_token(make_stack):
    async def scenario():
        async with make_stack() as stack:
            await stack.authenticate()
            auth = _manager(stack)
            try:
                state = await auth.start()
                return state, auth.current_user
            finally:
                await auth.stop()

    state, user = asyncio.run(scenario())
    assert state == AuthState.LOGGED_IN
    assert user.username == "tester"


def test_start_with_rejected_token_clears_it(make_stack):
    async def scenario():
        async with make_stack() as stack:
            await stack.tokens.save(AuthSession(access_token="expired"))
            auth = _manager(stack)
            try:
                state = await auth.start()
                return state, auth.state, await stack.tokens.load()
            finally:
                await auth.stop()

    started, state, saved = asyncio.run(scenario())
    assert started == AuthState.LOGGED_OUT
    assert state == AuthState.LOGGED_OUT
    assert saved is None


def test_start_without_token_makes_no_request(make_stack, backend):
    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            try:
                return await auth.start()
            finally:
                await auth.stop()

    assert asyncio.run(scenario()) == AuthState.LOGGED_OUT
    assert backend.requests == []


def test_logout_succeeds_locally_when_server_fails(make_stack, backend):
    backend.overrides[("POST", "/api/auth/logout")] = (500, None)

    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            await auth.login("test@example.com", PASSWORD)
            await auth.logout()
            return auth.state, stack.tokens.get(), await stack.tokens.load()

    state, session, saved = asyncio.run(scenario())
    assert state == AuthState.LOGGED_OUT
    assert session is None and saved is None
    assert len(backend.requests_to("POST", "/api/auth/logout")) == 1


def test_unauthorized_anywhere_forces_logout(make_stack, backend):
    backend.overrides[("GET", "/api/recordings/")] = (401, {"detail": "Token expired"})

    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            events = auth.events.add_listener()
            await auth.start()
            await auth.login("test@example.com", PASSWORD)
            with pytest.raises(Unauthorized):
                await stack.engine.list_full()
            # No yield to the loop between the failed call and these reads
            seen = (auth.state, auth.is_authenticated, auth.error_message, stack.tokens.get())
            await auth.stop()
            states = [events.get_nowait()["state"] for _ in range(events.qsize())]
            return seen, states

    (state, authenticated, error_message, session), states = asyncio.run(scenario())
    assert state == AuthState.LOGGED_OUT
    assert not authenticated
    assert error_message == "Session expired, please log in again"
    assert session is None
    assert states == ["logged_in", "logged_out"]


def test_unauthorized_without_start_still_logs_out(make_stack, backend):
    backend.overrides[("GET", "/api/recordings/summary")] = (401, None)

    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            await auth.login("test@example.com", PASSWORD)
            with pytest.raises(Unauthorized):
                await stack.engine.list_summary()
            return auth.state

    assert asyncio.run(scenario()) == AuthState.LOGGED_OUT


def test_stopped_manager_ignores_unauthorized(make_stack, backend):
    backend.overrides[("GET", "/api/recordings/")] = (401, None)

    async def scenario():
        async with make_stack() as stack:
            auth = _manager(stack)
            await auth.login("test@example.com", PASSWORD)
            await auth.stop()
            with pytest.raises(Unauthorized):
                await stack.engine.list_full()
            return auth.state, stack.unauthorized.subscriber_count

    state, subscribers = asyncio.run(scenario())
    assert state == AuthState.LOGGED_IN
    assert subscribers == 0
