"""Collaborators shared by submission services and job workers."""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import httpx

from atelier.core.config import Settings
from atelier.core.timezone import epoch_ms, utcnow
from atelier.services.images import PillowImageNormalizer
from atelier.services.provider_gateway import ProviderGateway
from atelier.services.share_tokens import ShareTokenSigner
from atelier.services.storage import LocalFileStorage, StorageSink
from atelier.uow import UowFactory
from atelier.workers.scheduler import Scheduler, build_scheduler

RANDOM_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


@dataclass
class JobContext:
    settings: Settings
    uow_factory: UowFactory
    gateway: ProviderGateway
    normalizer: PillowImageNormalizer
    storage: StorageSink
    trial_storage: StorageSink
    scheduler: Scheduler
    share_tokens: ShareTokenSigner
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], datetime] = utcnow

    def timeout_at(self, started_at: datetime) -> datetime:
        """Instant after which a creating job counts as abandoned."""
        return started_at + timedelta(
            seconds=self.settings.provider_timeout_seconds
            + self.settings.provider_timeout_margin_seconds
        )

    def random_suffix(self, length: int = 7) -> str:
        return "".join(self.rng.choice(RANDOM_ALPHABET) for _ in range(length))

    def creation_filename(self, user_id: int, creation_id: int, now: datetime) -> str:
        return f"{user_id}_{creation_id}_{epoch_ms(now)}_{self.random_suffix()}.png"

    def trial_filename(self, trial_id: int, now: datetime) -> str:
        return f"anon_{trial_id}_{epoch_ms(now)}_{self.random_suffix()}.png"

    def landscape_filename(self, user_id: int, creation_id: int, now: datetime) -> str:
        return f"landscape/{user_id}_{creation_id}_{epoch_ms(now)}_{self.random_suffix()}.png"


def creation_placeholder(user_id: int, now: datetime) -> str:
    return f"creating_{user_id}_{epoch_ms(now)}.png"


def trial_placeholder(now: datetime, pool_refill: bool = False) -> str:
    if pool_refill:
        return f"creating_anon_pool_{epoch_ms(now)}.png"
    return f"creating_anon_{epoch_ms(now)}.png"


def build_job_context(
    settings: Settings,
    uow_factory: UowFactory,
    http_client: Optional[httpx.AsyncClient] = None,
    scheduler: Optional[Scheduler] = None,
) -> JobContext:
    """Wire the production collaborators from settings."""
    storage_root = Path(settings.storage_root)
    public_url = settings.storage_public_url.rstrip("/")
    return JobContext(
        settings=settings,
        uow_factory=uow_factory,
        gateway=ProviderGateway(
            timeout_seconds=settings.provider_timeout_seconds,
            error_body_limit=settings.provider_error_body_limit,
            default_width=settings.default_image_width,
            default_height=settings.default_image_height,
            client=http_client,
        ),
        normalizer=PillowImageNormalizer(),
        storage=LocalFileStorage(storage_root / "creations", f"{public_url}/creations"),
        trial_storage=LocalFileStorage(storage_root / "anon", f"{public_url}/anon"),
        scheduler=scheduler or build_scheduler(settings, client=http_client),
        share_tokens=ShareTokenSigner(
            secret=settings.share_token_secret,
            ttl_seconds=settings.share_token_ttl_seconds,
            public_base_url=settings.public_base_url,
        ),
    )
