"""
Record Store — typed access to PrintRun entities over an injected AsyncSession.

Every component that reads or writes records receives a RecordStore at
construction/call time instead of reaching for a module-level session, so
tests can hand in a store bound to an in-memory SQLite database.

All SQLAlchemy errors surface as ``StoreFailure``; callers never see a
driver exception. Mutations that must land together go through ``atomic()``,
which commits on success and rolls back on any failure.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFound, StoreFailure

logger = structlog.get_logger()

ModelT = TypeVar("ModelT")


class RecordStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, model: type[ModelT], key: Any) -> ModelT | None:
        try:
            return await self.session.get(model, _coerce_key(key))
        except SQLAlchemyError as exc:
            raise StoreFailure(f"get:{model.__tablename__}", exc) from exc

    async def require(self, model: type[ModelT], key: Any, entity: str | None = None) -> ModelT:
        """Like ``get`` but raises NotFound for a missing row."""
        record = await self.get(model, key)
        if record is None:
            raise NotFound(entity or model.__name__, key)
        return record

    async def refresh(self, record: Any) -> None:
        """Reload a record's columns from the database."""
        try:
            await self.session.refresh(record)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"refresh:{record.__tablename__}", exc) from exc

    async def list_where(
        self,
        model: type[ModelT],
        *filters,
        order_by: Iterable[Any] = (),
        limit: int | None = None,
    ) -> list[ModelT]:
        stmt = select(model).where(*filters).order_by(*order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self.scalars(stmt, operation=f"list:{model.__tablename__}")

    async def first_where(self, model: type[ModelT], *filters, order_by: Iterable[Any] = ()) -> ModelT | None:
        rows = await self.list_where(model, *filters, order_by=order_by, limit=1)
        return rows[0] if rows else None

    async def count_where(self, model: type, *filters) -> int:
        stmt = select(func.count()).select_from(model).where(*filters)
        try:
            result = await self.session.execute(stmt)
            return int(result.scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"count:{model.__tablename__}", exc) from exc

    async def scalars(self, statement, operation: str = "select") -> list:
        try:
            result = await self.session.execute(statement)
            return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StoreFailure(operation, exc) from exc

    # ── Writes ───────────────────────────────────────────────────────────

    def add(self, record: Any) -> Any:
        """Stage a new record; it is written by the next flush/commit."""
        self.session.add(record)
        return record

    async def insert(self, record: ModelT) -> ModelT:
        """Stage and flush a record so its generated identifier is populated."""
        self.session.add(record)
        await self.flush(operation=f"insert:{record.__tablename__}")
        return record

    async def flush(self, operation: str = "flush") -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise StoreFailure(operation, exc) from exc

    async def update_where(self, model: type, values: dict[str, Any], *filters) -> int:
        """Bulk UPDATE; returns the number of matched rows."""
        stmt = update(model).where(*filters).values(**values)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"update:{model.__tablename__}", exc) from exc
        return int(result.rowcount or 0)

    async def delete_where(self, model: type, *filters) -> int:
        """Bulk DELETE; returns the number of deleted rows."""
        stmt = delete(model).where(*filters)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreFailure(f"delete:{model.__tablename__}", exc) from exc
        return int(result.rowcount or 0)

    async def commit(self, operation: str = "commit") -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.rollback()
            raise StoreFailure(operation, exc) from exc

    async def rollback(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            logger.error("store.rollback_failed", error=str(exc))

    @asynccontextmanager
    async def atomic(self, operation: str) -> AsyncIterator[RecordStore]:
        """Unit of work: everything staged inside the block commits together or not at all."""
        try:
            yield self
        except SQLAlchemyError as exc:
            await self.rollback()
            raise StoreFailure(operation, exc) from exc
        except BaseException:
            await self.rollback()
            raise
        await self.commit(operation)


def _coerce_key(key: Any) -> Any:
    if isinstance(key, str):
        try:
            return uuid.UUID(key)
        except ValueError:
            return key
    return key
