"""Anonymous trial submission and shared result pool tests."""

from datetime import timedelta

import pytest

from atelier.models.creation import CreationStatus
from atelier.models.metadata import ErrorCode, JobMetadata
from atelier.models.trial import TrialCreation
from atelier.services.exceptions import ProviderUnavailableError, TrialNotFoundError
from atelier.services.trials import TrialService
from atelier.workers.jobs import JobOutcome, TrialJobPayload
from conftest import add_provider


async def _seed_pool(uow_factory, clock, prompt: str, filenames: list[str], age_seconds: int = 0):
    created_at = clock() - timedelta(seconds=age_seconds)
    async with await uow_factory() as uow:
        for filename in filenames:
            await uow.trials.add(
                TrialCreation(
                    client_id="seed-client",
                    prompt=prompt,
                    status=CreationStatus.COMPLETED,
                    filename=filename,
                    url=f"https://cdn.atelier.test/anon/{filename}",
                    width=512,
                    height=512,
                    meta=JobMetadata(started_at=created_at).to_json(),
                    created_at=created_at,
                )
            )


async def _pool_refills(uow_factory, settings) -> list[TrialCreation]:
    async with await uow_factory() as uow:
        rows = await uow.trials.list_by_status(CreationStatus.CREATING)
    return [row for row in rows if row.client_id == settings.trial_pool_client_id]


@pytest.fixture
def service(ctx) -> TrialService:
    return TrialService(ctx)


class TestTrialSubmission:
    @pytest.mark.asyncio
    async def test_empty_pool_starts_generation(self, service, uow_factory, scheduler, provider):
        # Arrange
        await add_provider(uow_factory)

        # Act
        submission = await service.submit("client-a", "  sunset  ")

        # Assert
        assert submission.status == CreationStatus.CREATING
        assert submission.from_cache is False
        assert submission.filename is None
        assert submission.prompt == "sunset"
        [payload] = scheduler.payloads
        assert isinstance(payload, TrialJobPayload)
        assert payload.trial_id == submission.trial_id

        [result] = await scheduler.run_all()
        assert result.outcome == JobOutcome.COMPLETED
        assert result.filename.startswith(f"anon_{submission.trial_id}_")
        assert result.url == f"https://cdn.atelier.test/anon/{result.filename}"

    @pytest.mark.asyncio
    async def test_completed_result_is_served_to_other_clients(
        self, ctx, service, uow_factory, scheduler, provider
    ):
        await add_provider(uow_factory)
        first = await service.submit("client-a", "sunset")
        [generated] = await scheduler.run_all()

        hit = await service.submit("client-b", "sunset")

        assert hit.status == CreationStatus.COMPLETED
        assert hit.from_cache is True
        assert hit.trial_id != first.trial_id
        assert hit.filename == generated.filename
        assert hit.url == generated.url
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_pool_pick_is_random(self, service, uow_factory, clock):
        await add_provider(uow_factory)
        await _seed_pool(uow_factory, clock, "mountain", ["m1.png", "m2.png", "m3.png"])

        served = set()
        for i in range(30):
            hit = await service.submit(f"client-{i}", "mountain")
            served.add(hit.filename)

        assert len(served) >= 2, "Pool hits should not always return the newest member"
        assert served <= {"m1.png", "m2.png", "m3.png"}

    @pytest.mark.asyncio
    async def test_expired_pool_members_are_ignored(self, service, uow_factory, clock, settings):
        await add_provider(uow_factory)
        await _seed_pool(
            uow_factory,
            clock,
            "lake",
            ["old.png"],
            age_seconds=settings.trial_pool_ttl_seconds + 60,
        )

        submission = await service.submit("client-a", "lake")

        assert submission.status == CreationStatus.CREATING
        assert submission.from_cache is False

    @pytest.mark.asyncio
    async def test_resubmission_returns_existing_request(self, service, uow_factory, scheduler):
        await add_provider(uow_factory)
        first = await service.submit("client-a", "forest")

        again = await service.submit("client-a", "forest")

        assert again.existing is True
        assert again.trial_id == first.trial_id
        assert again.request_id == first.request_id
        assert len(scheduler.jobs) == 1

    @pytest.mark.asyncio
    async def test_failed_trial_does_not_block_resubmission(
        self, service, uow_factory, scheduler, provider
    ):
        await add_provider(uow_factory)
        provider.respond_error(500, text="model crashed")
        first = await service.submit("client-a", "forest")
        [result] = await scheduler.run_all()
        assert result.outcome == JobOutcome.FAILED

        again = await service.submit("client-a", "forest")

        assert again.existing is False
        assert again.trial_id != first.trial_id
        assert again.status == CreationStatus.CREATING

    @pytest.mark.asyncio
    async def test_blank_prompt_always_generates(self, service, uow_factory, scheduler):
        await add_provider(uow_factory)

        first = await service.submit("client-a", "")
        second = await service.submit("client-a", "   ")

        assert first.trial_id != second.trial_id
        assert len(scheduler.jobs) == 2

    @pytest.mark.asyncio
    async def test_missing_provider_is_rejected(self, service):
        with pytest.raises(ProviderUnavailableError):
            await service.submit("client-a", "sunset")

    @pytest.mark.asyncio
    async def test_schedule_failure_marks_trial_failed(self, service, uow_factory, scheduler):
        await add_provider(uow_factory)
        scheduler.fail_next = True

        submission = await service.submit("client-a", "sunset")

        assert submission.status == CreationStatus.FAILED
        assert submission.error_code == ErrorCode.SCHEDULE_FAILED


class TestPoolRefill:
    @pytest.mark.asyncio
    async def test_hits_refill_up_to_pool_max(
        self, service, uow_factory, scheduler, clock, settings
    ):
        """Pool of 1 with max 3: only two refills may be in flight."""
        await add_provider(uow_factory)
        await _seed_pool(uow_factory, clock, "river", ["r1.png"])

        for client in ("client-a", "client-b", "client-c", "client-d"):
            await service.submit(client, "river")

        refills = await _pool_refills(uow_factory, settings)
        assert len(refills) == 2
        assert all(row.job_meta.pool_refill for row in refills)
        assert all(row.filename.startswith("creating_anon_pool_") for row in refills)
        assert len(scheduler.jobs) == 2

    @pytest.mark.asyncio
    async def test_full_pool_schedules_nothing(self, service, uow_factory, scheduler, clock):
        await add_provider(uow_factory)
        await _seed_pool(uow_factory, clock, "river", ["r1.png", "r2.png", "r3.png"])

        await service.submit("client-a", "river")

        assert scheduler.jobs == []

    @pytest.mark.asyncio
    async def test_completed_refills_join_the_pool(
        self, service, uow_factory, scheduler, clock, settings
    ):
        await add_provider(uow_factory)
        await _seed_pool(uow_factory, clock, "river", ["r1.png"])
        await service.submit("client-a", "river")
        await service.submit("client-b", "river")
        await scheduler.run_all()

        await service.submit("client-c", "river")

        assert scheduler.jobs == []
        assert await _pool_refills(uow_factory, settings) == []

    @pytest.mark.asyncio
    async def test_refill_failure_does_not_fail_the_hit(
        self, service, uow_factory, scheduler, clock
    ):
        await add_provider(uow_factory)
        await _seed_pool(uow_factory, clock, "river", ["r1.png"])
        scheduler.fail_next = True

        hit = await service.submit("client-a", "river")

        assert hit.status == CreationStatus.COMPLETED
        assert hit.filename == "r1.png"


class TestDiscardAndList:
    @pytest.mark.asyncio
    async def test_shared_file_survives_until_last_reference(
        self, ctx, service, uow_factory, scheduler
    ):
        # Arrange
        await add_provider(uow_factory)
        await service.submit("client-a", "sunset")
        [generated] = await scheduler.run_all()
        await service.submit("client-b", "sunset")

        # Act
        copy_deleted = await service.discard("client-b", generated.filename)

        # Assert
        assert copy_deleted is False
        assert ctx.trial_storage.exists(generated.filename)

        original_deleted = await service.discard("client-a", generated.filename)
        assert original_deleted is True
        assert not ctx.trial_storage.exists(generated.filename)

    @pytest.mark.asyncio
    async def test_discard_unlinks_requests(self, service, uow_factory, scheduler):
        await add_provider(uow_factory)
        await service.submit("client-a", "sunset")
        [generated] = await scheduler.run_all()

        await service.discard("client-a", generated.filename)

        assert await service.list_for_client("client-a") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename", ["../secret.png", "nested/file.png", "a\\b.png", ""])
    async def test_unsafe_filename_is_rejected(self, service, filename):
        with pytest.raises(TrialNotFoundError):
            await service.discard("client-a", filename)

    @pytest.mark.asyncio
    async def test_other_clients_results_are_not_found(self, service, uow_factory, scheduler):
        await add_provider(uow_factory)
        await service.submit("client-a", "sunset")
        [generated] = await scheduler.run_all()

        with pytest.raises(TrialNotFoundError):
            await service.discard("client-z", generated.filename)

    @pytest.mark.asyncio
    async def test_list_for_client_newest_first(self, service, uow_factory, scheduler, clock):
        await add_provider(uow_factory)
        await service.submit("client-a", "first prompt")
        clock.advance(10)
        await service.submit("client-a", "second prompt")
        await service.submit("client-b", "not mine")
        await scheduler.run_all()

        listed = await service.list_for_client("client-a")

        assert [item.prompt for item in listed] == ["second prompt", "first prompt"]
        assert all(item.status == CreationStatus.COMPLETED for item in listed)
        assert all(item.existing for item in listed)
