"""Shared repository plumbing: one model, one session, errors as DatabaseError."""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from worknote_retrieval.database.models import Base
from worknote_retrieval.utils.errors import DatabaseError
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("repositories")

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Lookups and writes keyed by the model's ``id`` column.

    Repositories never commit; the caller's ``session_scope`` owns the
    transaction. Any ``SQLAlchemyError`` is logged and re-raised as
    ``DatabaseError``.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    @property
    def _name(self) -> str:
        return self.model.__name__

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        try:
            return await self.session.get(self.model, id)
        except SQLAlchemyError as e:
            logger.error(f"Error loading {self._name} {id}: {e}")
            raise DatabaseError(f"Failed to retrieve {self._name}") from e

    async def create(self, **values: Any) -> ModelType:
        """Insert a row and return it with server/default values populated."""
        try:
            instance = self.model(**values)
            self.session.add(instance)
            await self.session.flush()
            await self.session.refresh(instance)
            logger.debug(f"Created {self._name} {instance.id}")
            return instance
        except SQLAlchemyError as e:
            logger.error(f"Error creating {self._name}: {e}")
            raise DatabaseError(f"Failed to create {self._name}") from e

    async def delete(self, id: Any) -> bool:
        """Returns False when no row had this id."""
        try:
            result = await self.session.execute(
                delete(self.model)
                .where(self.model.id == id)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error deleting {self._name} {id}: {e}")
            raise DatabaseError(f"Failed to delete {self._name}") from e

        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.debug(f"Deleted {self._name} {id}")
        return deleted

    async def count(self, **equals: Any) -> int:
        """Row count, optionally restricted to ``column == value`` pairs."""
        query = select(func.count()).select_from(self.model)
        for column, value in equals.items():
            query = query.where(getattr(self.model, column) == value)
        try:
            result = await self.session.execute(query)
            return result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting {self._name}: {e}")
            raise DatabaseError(f"Failed to count {self._name} records") from e
