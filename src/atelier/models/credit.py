"""Credit balance entity - one non-negative balance per user."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, DateTime, Numeric
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utcnow


class UserCredits(SQLModel, table=True):
    """Per-user credit balance, mutated only through atomic adjustments."""

    __tablename__ = "user_credits"  # type: ignore[assignment]

    user_id: int = Field(primary_key=True)
    balance: Decimal = Field(
        default=Decimal("0"), sa_column=Column(Numeric(14, 4), nullable=False)
    )
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
