"""Provider entity - an external image generation endpoint."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utcnow


class ProviderStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Provider(SQLModel, table=True):
    """External provider server. Read-only from the job pipeline's perspective.

    `methods` maps a method key to its configuration, e.g.
    ``{"fluxImage": {"name": "Flux", "credits": 1}}``.
    """

    __tablename__ = "providers"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255)
    base_url: str
    auth_token: Optional[str] = Field(default=None)
    status: ProviderStatus = Field(default=ProviderStatus.ACTIVE, index=True)
    owner_user_id: Optional[int] = Field(default=None, index=True)
    methods: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def is_active(self) -> bool:
        return self.status == ProviderStatus.ACTIVE

    def has_method(self, method: str) -> bool:
        return isinstance(self.methods, dict) and isinstance(self.methods.get(method), dict)

    def method_name(self, method: str) -> str:
        config = self.methods.get(method) or {}
        return config.get("name") or method

    def method_credits(self, method: str) -> Optional[Decimal]:
        """Credit cost declared for a method, None when absent or not a number."""
        config = self.methods.get(method) or {}
        raw = config.get("credits")
        if raw is None or isinstance(raw, bool):
            return None
        try:
            credits = Decimal(str(raw))
        except InvalidOperation:
            return None
        return credits if credits.is_finite() and credits >= 0 else None
