"""Creation repository.

Provides data access for authenticated creation jobs. Workers re-read rows
with FOR UPDATE before any terminal write so duplicate deliveries serialize
on the row lock and the second one observes the terminal status.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.creation import Creation, CreationStatus


class CreationRepository:
    """Repository for Creation entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, creation: Creation) -> Creation:
        """Persist a new creation and assign its id.

        Args:
            creation: Creation entity to persist

        Returns:
            Persisted creation with generated ID
        """
        self.session.add(creation)
        await self.session.flush()
        return creation

    async def get_by_id(self, creation_id: int) -> Creation | None:
        """Retrieve a creation regardless of owner.

        Args:
            creation_id: Creation primary key

        Returns:
            Creation if found, None otherwise
        """
        result = await self.session.execute(select(Creation).where(Creation.id == creation_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_owned(self, creation_id: int, user_id: int) -> Creation | None:
        """Retrieve a creation only if it belongs to the given user."""
        result = await self.session.execute(
            select(Creation).where(
                Creation.id == creation_id,  # type: ignore[arg-type]
                Creation.user_id == user_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, creation_id: int) -> Creation | None:
        """Retrieve a creation with a row lock held until the transaction ends.

        Args:
            creation_id: Creation primary key

        Returns:
            Locked creation if found, None otherwise
        """
        result = await self.session.execute(
            select(Creation)
            .where(Creation.id == creation_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save(self, creation: Creation) -> Creation:
        """Flush pending changes of a creation loaded in this session."""
        self.session.add(creation)
        await self.session.flush()
        return creation

    async def list_by_status(
        self, status: CreationStatus, limit: int = 100, after_id: int = 0
    ) -> list[Creation]:
        """List creations in a status, oldest first, for cursor pagination.

        Args:
            status: Status to filter by
            limit: Maximum number of rows
            after_id: Only rows with a greater id

        Returns:
            Creations ordered by id ascending
        """
        result = await self.session.execute(
            select(Creation)
            .where(
                Creation.status == status,  # type: ignore[arg-type]
                Creation.id > after_id,  # type: ignore[operator]
            )
            .order_by(Creation.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_with_failed_landscape(
        self, limit: int = 100, after_id: int = 0
    ) -> list[Creation]:
        """List creations whose landscape generation ended in failure."""
        landscape_state = Creation.meta[("landscape", "state")].as_string()  # type: ignore[index]
        result = await self.session.execute(
            select(Creation)
            .where(landscape_state == "failed", Creation.id > after_id)  # type: ignore[operator]
            .order_by(Creation.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())
