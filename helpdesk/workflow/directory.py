from __future__ import annotations

from typing import Iterable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from helpdesk.db.models import FactoryTable, UserTable

from .models import DirectoryUser, UserRole


class UserDirectory(Protocol):
    """Read-only view of users the workflow engine consults."""

    async def find_by_id(self, user_id: str) -> DirectoryUser | None:
        ...

    async def find_active_by_role_and_factory(
        self, roles: Iterable[UserRole], factory_id: str | None = None
    ) -> list[DirectoryUser]:
        ...


class FactoryDirectory(Protocol):
    async def exists(self, factory_id: str) -> bool:
        ...


class SqlUserDirectory:
    """User directory backed by the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find_by_id(self, user_id: str) -> DirectoryUser | None:
        async with self._session_factory() as session:
            row = await session.get(UserTable, user_id)
        return None if row is None else self._to_user(row)

    async def find_active_by_role_and_factory(
        self, roles: Iterable[UserRole], factory_id: str | None = None
    ) -> list[DirectoryUser]:
        statement = select(UserTable).where(
            UserTable.is_active.is_(True),
            UserTable.role.in_([role.value for role in roles]),
        )
        if factory_id is not None:
            statement = statement.where(UserTable.factory_id == factory_id)
        async with self._session_factory() as session:
            result = await session.execute(statement.order_by(UserTable.full_name.asc()))
            rows = result.scalars().all()
        return [self._to_user(row) for row in rows]

    @staticmethod
    def _to_user(row: UserTable) -> DirectoryUser:
        return DirectoryUser(
            id=row.id,
            role=UserRole(row.role),
            is_active=row.is_active,
            factory_id=row.factory_id,
            full_name=row.full_name,
        )


class SqlFactoryDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists(self, factory_id: str) -> bool:
        async with self._session_factory() as session:
            row = await session.get(FactoryTable, factory_id)
        return row is not None and row.is_active
