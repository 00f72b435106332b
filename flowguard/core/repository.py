"""
Generic persistence helpers shared by the tenancy, role and ACL stores.

Every store talks to the database through `Repository`, which exposes the
find/create/save/delete-by-key contract and translates driver failures
into engine errors.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.core.database import Base
from flowguard.core.exceptions import BackendUnavailable, ConflictError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class Repository(Generic[ModelT]):
    """Query helpers for one model class."""

    def __init__(self, db: AsyncSession, model: Type[ModelT]):
        self.db = db
        self.model = model

    async def get(self, ident: Any) -> Optional[ModelT]:
        """Get a row by primary key (a tuple for composite keys)."""
        try:
            return await self.db.get(self.model, ident)
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "get") from exc

    async def find_one(self, *criteria: Any) -> Optional[ModelT]:
        try:
            result = await self.db.execute(select(self.model).where(*criteria))
            return result.scalars().first()
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "find_one") from exc

    async def find(self, *criteria: Any, order_by: Sequence[Any] = ()) -> list[ModelT]:
        """Find all rows matching the criteria."""
        query = select(self.model).where(*criteria)
        if order_by:
            query = query.order_by(*order_by)
        try:
            result = await self.db.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "find") from exc

    async def values(self, column: Any, *criteria: Any) -> list[Any]:
        """Distinct values of one column across matching rows."""
        try:
            result = await self.db.execute(select(column).where(*criteria).distinct())
            return [row[0] for row in result.all()]
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "values") from exc

    async def count(self, *criteria: Any) -> int:
        try:
            result = await self.db.execute(
                select(func.count()).select_from(self.model).where(*criteria)
            )
            return int(result.scalar_one())
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "count") from exc

    async def add(self, obj: ModelT) -> ModelT:
        """Stage a new row and flush so generated keys are populated."""
        self.db.add(obj)
        await self.flush()
        return obj

    async def delete(self, obj: ModelT) -> None:
        try:
            await self.db.delete(obj)
            await self.db.flush()
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "delete") from exc

    async def delete_where(self, *criteria: Any) -> int:
        """Bulk delete; returns the number of rows removed."""
        try:
            result = await self.db.execute(delete(self.model).where(*criteria))
            return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "delete_where") from exc

    async def flush(self) -> None:
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(
                f"{self.model.__name__} violates a uniqueness constraint"
            ) from exc
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "flush") from exc

    async def save(self) -> None:
        """Commit the unit of work."""
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(
                f"{self.model.__name__} violates a uniqueness constraint"
            ) from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise self._wrap(exc, "save") from exc

    def _wrap(self, exc: SQLAlchemyError, operation: str) -> BackendUnavailable:
        logger.error(
            "Store operation failed",
            model=self.model.__name__,
            operation=operation,
            error=str(exc),
        )
        return BackendUnavailable(
            "Store of record is unavailable",
            details={"model": self.model.__name__, "operation": operation},
        )
