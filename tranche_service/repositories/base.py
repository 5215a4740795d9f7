"""
Generic async repository (Data Access Layer).

Implements the Repository pattern on top of SQLAlchemy's ``AsyncSession``.
Concrete repositories inherit from ``BaseRepository[T]`` and add the
entity-specific queries the pricing engine and lifecycle manager need.

Transaction ownership:
- Repositories **never commit**.  They ``flush`` so that constraint
  violations surface immediately, but the enclosing
  :class:`~tranche_service.db.unit_of_work.UnitOfWork` decides whether the
  whole logical operation (purchase + auto-advance + raise recompute, or
  transition + funded recalculation) commits or rolls back as one.
- ``IntegrityError`` is not caught here; services translate it into the
  appropriate domain error.

Resilience:
    Every database call is routed through the global ``db_circuit_breaker``
    so a database outage fails fast instead of exhausting the pool.
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from tranche_service.core.resilience import db_circuit_breaker

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic repository for SQLModel entities.

    Parameters
    ----------
    model : Type[ModelType]
        The SQLModel class this repository manages.
    db : AsyncSession
        The session owned by the current unit of work.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def _execute_with_circuit_breaker(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        return await db_circuit_breaker.call(func, *args, **kwargs)

    async def _scalars(self, stmt: Any) -> List[ModelType]:
        async def _run() -> List[ModelType]:
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

        return await self._execute_with_circuit_breaker(_run)

    async def _scalar_one_or_none(self, stmt: Any) -> Optional[ModelType]:
        async def _run() -> Optional[ModelType]:
            result = await self.db.execute(stmt)
            return result.scalars().first()

        return await self._execute_with_circuit_breaker(_run)

    async def _rowcount(self, stmt: Any) -> int:
        async def _run() -> int:
            result = await self.db.execute(stmt)
            return result.rowcount

        return await self._execute_with_circuit_breaker(_run)

    async def get(self, id: Any) -> Optional[ModelType]:
        """Fetch a single entity by primary key.  Returns ``None`` if not found."""

        async def _get() -> Optional[ModelType]:
            return await self.db.get(self.model, id)

        return await self._execute_with_circuit_breaker(_get)

    async def reload(self, id: Any, for_update: bool = False) -> Optional[ModelType]:
        """
        Re-read an entity from the database, overwriting the identity map.

        Used after conditional bulk ``UPDATE`` statements, which bypass the
        ORM's in-memory state.  ``for_update`` adds ``FOR UPDATE`` on
        dialects that support row locks (ignored by SQLite).
        """
        pk = self.model.__table__.primary_key.columns
        stmt = (
            select(self.model)
            .where(*(col == id for col in pk))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return await self._scalar_one_or_none(stmt)

    async def get_all(self, skip: int = 0, limit: int = 100) -> List[ModelType]:
        """Return a page of entities ordered by primary key (stable pagination)."""
        pk_columns = self.model.__table__.primary_key.columns
        stmt = select(self.model).order_by(*pk_columns).offset(skip).limit(limit)
        return await self._scalars(stmt)

    async def add(self, obj_in: ModelType) -> ModelType:
        """Stage a new entity, flush it and return the refreshed instance."""

        async def _add() -> ModelType:
            self.db.add(obj_in)
            await self.db.flush()
            await self.db.refresh(obj_in)
            return obj_in

        return await self._execute_with_circuit_breaker(_add)

    async def save(self, entity: ModelType) -> ModelType:
        """Flush pending attribute changes of an already-tracked entity."""

        async def _save() -> ModelType:
            self.db.add(entity)
            await self.db.flush()
            return entity

        return await self._execute_with_circuit_breaker(_save)

    async def count(self) -> int:
        async def _count() -> int:
            stmt = select(func.count()).select_from(self.model)
            result = await self.db.execute(stmt)
            return result.scalar_one()

        return await self._execute_with_circuit_breaker(_count)

    async def delete(self, id: Any) -> bool:
        """Delete an entity by primary key.  Returns ``False`` if it did not exist."""

        async def _delete() -> bool:
            entity = await self.db.get(self.model, id)
            if entity is None:
                return False
            await self.db.delete(entity)
            await self.db.flush()
            return True

        return await self._execute_with_circuit_breaker(_delete)
