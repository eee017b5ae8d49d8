"""
Persistance clé-valeur (chaîne -> chaîne)

Le cœur ne dépend que du protocole `KeyValueStore` ; deux implémentations :
- InMemoryKeyValueStore : dictionnaire en mémoire (tests, démonstrations)
- SqlKeyValueStore : table SQLite via SQLAlchemy asynchrone
"""
from typing import Dict, Optional, Protocol
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from faceauth.models.key_value import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Interface du collaborateur de persistance"""

    async def get_string(self, key: str) -> Optional[str]:
        ...

    async def set_string(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...

    async def contains_key(self, key: str) -> bool:
        ...


class InMemoryKeyValueStore:
    """Stockage en mémoire"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get_string(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_string(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def contains_key(self, key: str) -> bool:
        return key in self._data

    def keys(self):
        return list(self._data.keys())


class SqlKeyValueStore:
    """Stockage dans la table key_value_entries"""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        if session_maker is None:
            from faceauth.database import async_session_maker
            session_maker = async_session_maker
        self._session_maker = session_maker

    async def get_string(self, key: str) -> Optional[str]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(KeyValueEntry.value).where(KeyValueEntry.key == key)
            )
            return result.scalar_one_or_none()

    async def set_string(self, key: str, value: str) -> None:
        async with self._session_maker() as session:
            await self._upsert(session, key, value)
            await session.commit()

    async def remove(self, key: str) -> None:
        async with self._session_maker() as session:
            await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            await session.commit()

    async def contains_key(self, key: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(KeyValueEntry.key).where(KeyValueEntry.key == key)
            )
            return result.scalar_one_or_none() is not None

    @staticmethod
    async def _upsert(session: AsyncSession, key: str, value: str) -> None:
        entry = await session.get(KeyValueEntry, key)
        if entry is None:
            session.add(KeyValueEntry(key=key, value=value))
        else:
            entry.value = value
