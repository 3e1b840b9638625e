"""Repositories for anonymous trial creations and trial requests."""

from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.creation import CreationStatus
from atelier.models.trial import TrialCreation, TrialRequest


class TrialCreationRepository:
    """Repository for TrialCreation entities, including trial pool queries."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, trial: TrialCreation) -> TrialCreation:
        self.session.add(trial)
        await self.session.flush()
        return trial

    async def save(self, trial: TrialCreation) -> TrialCreation:
        self.session.add(trial)
        await self.session.flush()
        return trial

    async def get_by_id(self, trial_id: int) -> TrialCreation | None:
        result = await self.session.execute(
            select(TrialCreation).where(TrialCreation.id == trial_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_ids(self, trial_ids: list[int]) -> dict[int, TrialCreation]:
        if not trial_ids:
            return {}
        result = await self.session.execute(
            select(TrialCreation).where(TrialCreation.id.in_(trial_ids))  # type: ignore[union-attr]
        )
        return {trial.id: trial for trial in result.scalars().all()}  # type: ignore[misc]

    async def get_for_update(self, trial_id: int) -> TrialCreation | None:
        """Retrieve a trial creation with a row lock held until the transaction ends."""
        result = await self.session.execute(
            select(TrialCreation)
            .where(TrialCreation.id == trial_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_client_and_filename(
        self, client_id: str, filename: str
    ) -> TrialCreation | None:
        result = await self.session.execute(
            select(TrialCreation)
            .where(
                TrialCreation.client_id == client_id,  # type: ignore[arg-type]
                TrialCreation.filename == filename,  # type: ignore[arg-type]
            )
            .order_by(TrialCreation.id.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_recent_completed_by_prompt(
        self, prompt: str, since: datetime, limit: int = 5
    ) -> list[TrialCreation]:
        """Find trial pool members for a prompt.

        Pool members are completed, originally generated rows (cache copies
        excluded) created at or after `since`.

        Args:
            prompt: Exact prompt string used as cache key
            since: Oldest acceptable creation time (TTL window start)
            limit: Maximum rows, clamped to 1..20

        Returns:
            Newest-first list of pool members
        """
        limit = min(max(int(limit), 1), 20)
        result = await self.session.execute(
            select(TrialCreation)
            .where(
                TrialCreation.prompt == prompt,  # type: ignore[arg-type]
                TrialCreation.status == CreationStatus.COMPLETED,  # type: ignore[arg-type]
                TrialCreation.source_trial_id.is_(None),  # type: ignore[union-attr]
                TrialCreation.created_at >= since,  # type: ignore[operator]
            )
            .order_by(TrialCreation.created_at.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_in_flight_pool_refills(self, prompt: str, pool_client_id: str) -> int:
        """Count pool refill jobs still generating for a prompt."""
        result = await self.session.execute(
            select(func.count())
            .select_from(TrialCreation)
            .where(
                TrialCreation.prompt == prompt,  # type: ignore[arg-type]
                TrialCreation.client_id == pool_client_id,  # type: ignore[arg-type]
                TrialCreation.status == CreationStatus.CREATING,  # type: ignore[arg-type]
            )
        )
        return int(result.scalar_one())

    async def count_by_filename(self, filename: str) -> int:
        """Count rows referencing a stored file (reference count for deletion)."""
        result = await self.session.execute(
            select(func.count())
            .select_from(TrialCreation)
            .where(TrialCreation.filename == filename)  # type: ignore[arg-type]
        )
        return int(result.scalar_one())

    async def delete(self, trial_id: int) -> None:
        await self.session.execute(
            delete(TrialCreation).where(TrialCreation.id == trial_id)  # type: ignore[arg-type]
        )

    async def list_by_status(
        self, status: CreationStatus, limit: int = 100, after_id: int = 0
    ) -> list[TrialCreation]:
        result = await self.session.execute(
            select(TrialCreation)
            .where(
                TrialCreation.status == status,  # type: ignore[arg-type]
                TrialCreation.id > after_id,  # type: ignore[operator]
            )
            .order_by(TrialCreation.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())


class TrialRequestRepository:
    """Repository for TrialRequest link rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, request: TrialRequest) -> TrialRequest:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_latest_by_client_and_prompt(
        self, client_id: str, prompt: str
    ) -> TrialRequest | None:
        """Latest request of a client for a prompt (idempotent re-submission lookup)."""
        result = await self.session.execute(
            select(TrialRequest)
            .where(
                TrialRequest.client_id == client_id,  # type: ignore[arg-type]
                TrialRequest.prompt == prompt,  # type: ignore[arg-type]
            )
            .order_by(TrialRequest.created_at.desc(), TrialRequest.id.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_client(self, client_id: str, limit: int = 50) -> list[TrialRequest]:
        result = await self.session.execute(
            select(TrialRequest)
            .where(TrialRequest.client_id == client_id)  # type: ignore[arg-type]
            .order_by(TrialRequest.created_at.desc(), TrialRequest.id.desc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def unlink_trial(self, trial_id: int) -> int:
        """Null out the trial reference of every request pointing at a trial row.

        Returns:
            Number of requests unlinked
        """
        result = await self.session.execute(
            update(TrialRequest)
            .where(TrialRequest.trial_id == trial_id)  # type: ignore[arg-type]
            .values(trial_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def mark_fulfilled(self, trial_id: int, fulfilled_at: datetime) -> int:
        """Stamp `fulfilled_at` on requests for a trial row that are still waiting."""
        result = await self.session.execute(
            update(TrialRequest)
            .where(
                TrialRequest.trial_id == trial_id,  # type: ignore[arg-type]
                TrialRequest.fulfilled_at.is_(None),  # type: ignore[union-attr]
            )
            .values(fulfilled_at=fulfilled_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
