"""Key-value persistence for tokens, the user profile and the recording cache."""

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import KeyValue

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Reads and writes string values under fixed keys."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        async with self._session_factory() as db:
            row = await db.get(KeyValue, key)
            return row.value if row else None

    async def get_many(self, keys: list[str]) -> dict[str, str]:
        async with self._session_factory() as db:
            result = await db.execute(select(KeyValue).where(KeyValue.key.in_(keys)))
            return {row.key: row.value for row in result.scalars()}

    async def set(self, key: str, value: str) -> None:
        await self.set_many({key: value})

    async def set_many(self, items: dict[str, str], remove: tuple[str, ...] = ()) -> None:
        """Write all items and drop the keys in *remove* in one transaction."""
        now = datetime.utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                for key, value in items.items():
                    await db.merge(KeyValue(key=key, value=value, updated_at=now))
                if remove:
                    await db.execute(delete(KeyValue).where(KeyValue.key.in_(remove)))

    async def delete(self, *keys: str) -> None:
        async with self._session_factory() as db:
            async with db.begin():
                await db.execute(delete(KeyValue).where(KeyValue.key.in_(keys)))
