"""Provider repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.provider import Provider, ProviderStatus


class ProviderRepository:
    """Read access to provider servers (plus `add` for seeding)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, provider: Provider) -> Provider:
        self.session.add(provider)
        await self.session.flush()
        return provider

    async def get_by_id(self, provider_id: int) -> Provider | None:
        result = await self.session.execute(select(Provider).where(Provider.id == provider_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_first_active(self) -> Provider | None:
        """Lowest-id active provider, used when a job's own provider is gone."""
        result = await self.session.execute(
            select(Provider)
            .where(Provider.status == ProviderStatus.ACTIVE)  # type: ignore[arg-type]
            .order_by(Provider.id.asc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()
