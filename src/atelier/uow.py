"""Unit of Work pattern.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atelier.repositories.creation import CreationRepository
from atelier.repositories.credit import CreditLedgerRepository
from atelier.repositories.provider import ProviderRepository
from atelier.repositories.trial import TrialCreationRepository, TrialRequestRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages one database transaction and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            creation = await uow.creations.get_for_update(creation_id)
            creation.mark_failed(...)
            await uow.credits.adjust(creation.user_id, cost)
            # Commits on successful exit, rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.creations = CreationRepository(session)
        self.credits = CreditLedgerRepository(session)
        self.providers = ProviderRepository(session)
        self.trials = TrialCreationRepository(session)
        self.trial_requests = TrialRequestRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


UowFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UowFactory:
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=20)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.providers.add(provider)
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
