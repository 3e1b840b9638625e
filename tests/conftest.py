"""pytest fixtures for atelier backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- engine / uow_factory: In-memory SQLite database with all tables created
- clock: Controllable clock shared by services and workers
- provider: Scriptable provider endpoint served through httpx.MockTransport
- scheduler: Scheduler that records jobs and runs them on demand
- ctx: JobContext wired with the fakes above and tmp_path storage
"""

import asyncio
import io
import os
import random
import struct
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from atelier import models  # noqa: F401
from atelier.core.config import Settings
from atelier.models.provider import Provider, ProviderStatus
from atelier.services.exceptions import SchedulingError, StorageError
from atelier.services.images import PillowImageNormalizer
from atelier.services.provider_gateway import ProviderGateway
from atelier.services.share_tokens import ShareTokenSigner
from atelier.services.storage import LocalFileStorage
from atelier.uow import UowFactory, create_uow_factory
from atelier.workers.context import JobContext
from atelier.workers.jobs import JobPayload, JobResult
from atelier.workers.scheduler import JobHandler

PROVIDER_URL = "https://provider.test/generate"


def make_png(width: int = 8, height: int = 8, color: str = "red") -> bytes:
    """Small valid PNG image."""
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def make_jpeg(width: int = 8, height: int = 8, color: str = "blue") -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="JPEG")
    return out.getvalue()


def make_oversized_bmp(width: int = 30_000, height: int = 30_000) -> bytes:
    """BMP header declaring dimensions far above Pillow's decompression bomb limit."""
    file_header = struct.pack("<2sIHHI", b"BM", 54, 0, 0, 54)
    info_header = struct.pack("<IiiHHIIiiII", 40, width, height, 1, 24, 0, 0, 2835, 2835, 0, 0)
    return file_header + info_header


class FakeClock:
    """Clock returning a fixed instant until advanced."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ProviderStub:
    """Scripted provider endpoint.

    Each call pops the next queued response (or reuses the default PNG
    response when the queue is empty) and records the request.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.queue: list[Callable[[httpx.Request], Awaitable[httpx.Response]]] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def respond_png(
        self, width: Optional[int] = None, height: Optional[int] = None, color: str = ""
    ) -> None:
        headers = {"content-type": "image/png"}
        if width:
            headers["x-image-width"] = str(width)
        if height:
            headers["x-image-height"] = str(height)
        if color:
            headers["x-image-color"] = color

        async def _respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers=headers, content=make_png())

        self.queue.append(_respond)

    def respond_error(self, status: int, json_body: Optional[dict] = None, text: str = "") -> None:
        async def _respond(request: httpx.Request) -> httpx.Response:
            if json_body is not None:
                return httpx.Response(status, json=json_body)
            return httpx.Response(status, text=text)

        self.queue.append(_respond)

    def respond_slow(self, delay: float) -> None:
        async def _respond(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(delay)
            return httpx.Response(200, content=make_png())

        self.queue.append(_respond)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queue:
            return await self.queue.pop(0)(request)
        return httpx.Response(200, headers={"content-type": "image/png"}, content=make_png())


class RecordingScheduler:
    """Collects enqueued jobs; tests run them explicitly with `run_all`."""

    def __init__(self) -> None:
        self.jobs: list[tuple[JobPayload, JobHandler]] = []
        self.fail_next = False

    @property
    def payloads(self) -> list[JobPayload]:
        return [payload for payload, _ in self.jobs]

    async def enqueue(self, payload: JobPayload, handler: JobHandler) -> None:
        if self.fail_next:
            self.fail_next = False
            raise SchedulingError("broker unreachable")
        self.jobs.append((payload, handler))

    async def run_all(self) -> list[JobResult]:
        """Run queued jobs in order, including jobs they enqueue."""
        results = []
        while self.jobs:
            payload, handler = self.jobs.pop(0)
            results.append(await handler(payload))
        return results

    async def run_twice(self) -> list[JobResult]:
        """Deliver every queued job two times (duplicate delivery)."""
        results = []
        while self.jobs:
            payload, handler = self.jobs.pop(0)
            results.append(await handler(payload))
            results.append(await handler(payload))
        return results


class FailingStorage:
    """Storage sink whose uploads always fail."""

    def __init__(self) -> None:
        self.deleted: list[str] = []

    async def upload(self, data: bytes, key: str) -> str:
        raise StorageError(f"disk full while writing {key}")

    async def delete(self, key: str) -> None:
        self.deleted.append(key)


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        APP_ENV="test",
        PUBLIC_BASE_URL="https://atelier.test",
        SHARE_TOKEN_SECRET="share-secret-for-tests",
        STORAGE_PUBLIC_URL="https://cdn.atelier.test",
        BROKER_CURRENT_SIGNING_KEY="current-signing-key",
        BROKER_NEXT_SIGNING_KEY="next-signing-key",
        INITIAL_CREDIT_BALANCE="10",
        TRIAL_POOL_MAX=3,
    )  # type: ignore[call-arg]


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine: AsyncEngine) -> UowFactory:
    return create_uow_factory(async_sessionmaker(engine, expire_on_commit=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest_asyncio.fixture
async def http_client(provider: ProviderStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


@pytest.fixture
def ctx(
    settings: Settings,
    uow_factory: UowFactory,
    http_client: httpx.AsyncClient,
    scheduler: RecordingScheduler,
    clock: FakeClock,
    tmp_path,
) -> JobContext:
    return JobContext(
        settings=settings,
        uow_factory=uow_factory,
        gateway=ProviderGateway(timeout_seconds=0.2, client=http_client),
        normalizer=PillowImageNormalizer(),
        storage=LocalFileStorage(tmp_path / "creations", "https://cdn.atelier.test/creations"),
        trial_storage=LocalFileStorage(tmp_path / "anon", "https://cdn.atelier.test/anon"),
        scheduler=scheduler,
        share_tokens=ShareTokenSigner(
            secret=settings.share_token_secret,
            ttl_seconds=settings.share_token_ttl_seconds,
            public_base_url=settings.public_base_url,
        ),
        rng=random.Random(1234),
        clock=clock,
    )


async def add_provider(
    uow_factory: UowFactory,
    *,
    credits: object = 3,
    owner_user_id: Optional[int] = None,
    status: ProviderStatus = ProviderStatus.ACTIVE,
    auth_token: Optional[str] = "provider-token",
    extra_methods: Optional[dict] = None,
) -> Provider:
    """Seed a provider exposing `fluxImage` (and optionally more methods)."""
    methods = {"fluxImage": {"name": "Flux", "credits": credits}}
    methods.update(extra_methods or {})
    async with await uow_factory() as uow:
        provider = await uow.providers.add(
            Provider(
                name="Test Provider",
                base_url=PROVIDER_URL,
                auth_token=auth_token,
                status=status,
                owner_user_id=owner_user_id,
                methods=methods,
            )
        )
    return provider


async def set_balance(uow_factory: UowFactory, user_id: int, amount: object) -> None:
    async with await uow_factory() as uow:
        await uow.credits.ensure_account(user_id, Decimal("0"))
        current = await uow.credits.get_balance(user_id)
        await uow.credits.adjust(user_id, Decimal(str(amount)) - current)


async def balance_of(uow_factory: UowFactory, user_id: int) -> Decimal:
    async with await uow_factory() as uow:
        balance = await uow.credits.get_balance(user_id)
    return balance if balance is not None else Decimal("0")
