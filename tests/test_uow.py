"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback and propagate
- Operations across repositories are atomic
"""

from decimal import Decimal

import pytest

from atelier.models.metadata import JobMetadata
from atelier.models.provider import Provider
from atelier.models.trial import TrialCreation, TrialRequest
from atelier.repositories.creation import CreationRepository
from atelier.repositories.credit import CreditLedgerRepository
from atelier.repositories.provider import ProviderRepository
from atelier.repositories.trial import TrialCreationRepository, TrialRequestRepository


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory):
    """Changes made within the context persist after the context exits."""
    async with await uow_factory() as uow:
        provider = await uow.providers.add(
            Provider(name="Committed", base_url="https://provider.test", methods={})
        )
        provider_id = provider.id

    async with await uow_factory() as uow:
        found = await uow.providers.get_by_id(provider_id)
    assert found is not None
    assert found.name == "Committed"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory):
    """Changes are rolled back and the exception is not swallowed."""
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.providers.add(
                Provider(name="Rolled back", base_url="https://provider.test", methods={})
            )
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        assert await uow.providers.get_first_active() is None


@pytest.mark.asyncio
async def test_uow_provides_all_repositories(uow_factory):
    async with await uow_factory() as uow:
        assert isinstance(uow.creations, CreationRepository)
        assert isinstance(uow.credits, CreditLedgerRepository)
        assert isinstance(uow.providers, ProviderRepository)
        assert isinstance(uow.trials, TrialCreationRepository)
        assert isinstance(uow.trial_requests, TrialRequestRepository)

        # All repositories share the transaction's session
        assert uow.creations.session is uow.session
        assert uow.trial_requests.session is uow.session


@pytest.mark.asyncio
async def test_uow_atomic_multi_repository_operation(uow_factory, clock):
    """A trial row, its request link and a ledger change roll back together."""
    with pytest.raises(RuntimeError):
        async with await uow_factory() as uow:
            trial = await uow.trials.add(
                TrialCreation(
                    client_id="client-a",
                    prompt="sunset",
                    filename="creating_anon_0.png",
                    meta=JobMetadata(started_at=clock()).to_json(),
                )
            )
            await uow.trial_requests.add(
                TrialRequest(client_id="client-a", prompt="sunset", trial_id=trial.id)
            )
            await uow.credits.adjust(1, Decimal("5"))
            raise RuntimeError("Simulated failure")

    async with await uow_factory() as uow:
        assert await uow.trial_requests.list_by_client("client-a") == []
        assert await uow.credits.get_balance(1) is None
