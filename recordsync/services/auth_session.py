"""Login state machine on top of TokenStore and HTTPClient."""

import logging
from enum import Enum

from recordsync.models.schemas import (
    AuthSession,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
    User,
)
from recordsync.services.errors import NetworkServiceError
from recordsync.services.events import EventChannel
from recordsync.services.http_client import HTTPClient
from recordsync.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    LOGGED_OUT = "logged_out"
    CHECKING = "checking"
    LOGGED_IN = "logged_in"


class AuthSessionManager:
    """Tracks whether the user is logged in and reacts to server-side 401s."""

    def __init__(
        self,
        http: HTTPClient,
        token_store: TokenStore,
        unauthorized: EventChannel,
        events: EventChannel | None = None,
    ):
        self.http = http
        self.token_store = token_store
        self.unauthorized = unauthorized
        self.events = events or EventChannel("auth")
        self.state = AuthState.LOGGED_OUT
        self.current_user: User | None = None
        self.error_message: str | None = None
        self._subscribed = False
        self._subscribe()

    @property
    def is_authenticated(self) -> bool:
        return self.state == AuthState.LOGGED_IN

    def _set_state(self, state: AuthState, user: User | None = None) -> None:
        self.state = state
        self.current_user = user
        logger.info(f"Auth state -> {state.value}")
        self.events.publish({
            "type": "auth",
            "state": state.value,
            "user": user.model_dump() if user else None,
        })

    # --- Lifecycle ---

    def _subscribe(self) -> None:
        if not self._subscribed:
            self.unauthorized.subscribe(self._on_unauthorized)
            self._subscribed = True

    async def start(self) -> AuthState:
        """Validate any saved token."""
        self._subscribe()
        if self.token_store.get() is not None:
            await self.verify()
        return self.state

    async def stop(self) -> None:
        if self._subscribed:
            self.unauthorized.unsubscribe(self._on_unauthorized)
            self._subscribed = False

    def _on_unauthorized(self, event: dict) -> None:
        # Runs inside the 401 handling, before the caller sees Unauthorized
        if self.state == AuthState.LOGGED_OUT:
            return
        logger.warning(f"Forcing logout after unauthorized response: {event.get('url')}")
        self.error_message = "Session expired, please log in again"
        self._set_state(AuthState.LOGGED_OUT)

    # --- Operations ---

    async def verify(self) -> bool:
        """Check the stored token against ``/auth/me``."""
        self._set_state(AuthState.CHECKING, self.current_user)
        try:
            user = await self.http.request(
                "GET", "/auth/me", requires_auth=True, response_model=User
            )
        except NetworkServiceError as e:
            logger.warning(f"Saved session is no longer valid: {e}")
            await self.token_store.clear()
            if self.state != AuthState.LOGGED_OUT:
                self._set_state(AuthState.LOGGED_OUT)
            return False

        await self.token_store.update_user(user)
        self._set_state(AuthState.LOGGED_IN, user)
        return True

    async def login(self, email: str, password: str) -> User:
        body = LoginRequest(email=email, password=password)
        return await self._authenticate("/auth/login", body.model_dump())

    async def register(self, username: str, email: str, password: str) -> User:
        body = RegisterRequest(username=username, email=email, password=password)
        return await self._authenticate("/auth/register", body.model_dump())

    async def _authenticate(self, path: str, body: dict) -> User:
        self.error_message = None
        try:
            response = await self.http.request(
                "POST", path, json=body, response_model=TokenResponse
            )
        except NetworkServiceError as e:
            self.error_message = str(e)
            logger.error(f"Authentication via {path} failed: {e}")
            raise

        await self.token_store.save(AuthSession(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            user=response.user,
        ))
        self._set_state(AuthState.LOGGED_IN, response.user)
        return response.user

    async def logout(self) -> None:
        """Log out locally no matter what the server says."""
        if self.token_store.get() is not None:
            try:
                await self.http.request("POST", "/auth/logout", requires_auth=True)
            except NetworkServiceError as e:
                logger.warning(f"Remote logout failed, logging out locally anyway: {e}")
        await self.token_store.clear()
        self.error_message = None
        self._set_state(AuthState.LOGGED_OUT)
