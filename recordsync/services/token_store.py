"""Owns the current access/refresh token pair and persists it."""

import logging

from recordsync.db.kv_store import KeyValueStore
from recordsync.models.schemas import AuthSession, User

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_KEY = "saved_user"


class TokenStore:
    """Single writer of auth state.

    Readers call :meth:`get`, which returns an immutable snapshot. Writers
    persist first and then swap the in-memory reference in one assignment,
    so nobody observes a half-written session.
    """

    def __init__(self, kv: KeyValueStore):
        self._kv = kv
        self._session: AuthSession | None = None

    def get(self) -> AuthSession | None:
        return self._session

    @property
    def access_token(self) -> str | None:
        session = self._session
        return session.access_token if session else None

    async def load(self) -> AuthSession | None:
        """Hydrate the in-memory session from persisted keys."""
        values = await self._kv.get_many([ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY])
        access = values.get(ACCESS_TOKEN_KEY)
        if not access:
            self._session = None
            return None

        user = None
        raw_user = values.get(USER_KEY)
        if raw_user:
            try:
                user = User.model_validate_json(raw_user)
            except ValueError as e:
                logger.warning(f"Discarding unreadable saved user: {e}")

        self._session = AuthSession(
            access_token=access,
            refresh_token=values.get(REFRESH_TOKEN_KEY),
            user=user,
        )
        logger.info("Restored saved auth session")
        return self._session

    async def save(self, session: AuthSession) -> None:
        items = {ACCESS_TOKEN_KEY: session.access_token}
        remove: list[str] = []
        if session.refresh_token:
            items[REFRESH_TOKEN_KEY] = session.refresh_token
        else:
            remove.append(REFRESH_TOKEN_KEY)
        if session.user is not None:
            items[USER_KEY] = session.user.model_dump_json()
        else:
            remove.append(USER_KEY)

        await self._kv.set_many(items, remove=tuple(remove))
        self._session = session.model_copy(deep=True)

    async def update_user(self, user: User) -> None:
        """Replace the stored user while keeping the tokens."""
        current = self._session
        if current is None:
            return
        await self.save(current.model_copy(update={"user": user}))

    async def clear(self) -> None:
        """Forget the session. Safe to call when nothing is stored."""
        self._session = None
        await self._kv.delete(ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)
