"""Key/value rows in ``app_settings``, shared with the shop application."""
from typing import Protocol, Dict, Iterable

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.database import dialect_insert
from app.models.shop import AppSetting
from app.utils.time import utcnow


class SettingsStore(Protocol):
    async def get_many(self, keys: Iterable[str]) -> Dict[str, str]: ...

    async def set_many(self, values: Dict[str, str]) -> None: ...

    async def delete_many(self, keys: Iterable[str]) -> int: ...


class SqlSettingsStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        """Stored values for ``keys``; missing and NULL entries are left out."""
        async with self._session_factory() as session:
            result = await session.execute(select(AppSetting).where(AppSetting.key.in_(list(keys))))
            return {row.key: row.value for row in result.scalars().all() if row.value is not None}

    async def set_many(self, values: Dict[str, str]) -> None:
        if not values:
            return
        now = utcnow()
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            for key, value in values.items():
                stmt = insert(AppSetting).values(key=key, value=value, updated_at=now)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={"value": stmt.excluded.value, "updated_at": now},
                )
                await session.execute(stmt)
            await session.commit()

    async def delete_many(self, keys: Iterable[str]) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(AppSetting).where(AppSetting.key.in_(list(keys))))
            await session.commit()
            return result.rowcount
