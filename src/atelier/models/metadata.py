"""Typed job metadata stored in the JSON `meta` column of job rows.

The outcome and landscape sections are tagged unions, so a failed outcome
cannot carry a completion timestamp and a ready landscape cannot carry an
error message. `args` is the one passthrough map: provider arguments vary
by method.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorCode(str, Enum):
    """Failure kinds recorded on failed jobs."""

    INVALID_PROVIDER = "invalid_provider"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    UPLOAD_FAILED = "upload_failed"
    SCHEDULE_FAILED = "schedule_failed"


class ProviderErrorDetail(BaseModel):
    """Diagnostic snapshot of a provider failure (body is size-capped)."""

    status: Optional[int] = None
    status_text: Optional[str] = None
    content_type: Optional[str] = None
    body: Any = None


class PendingOutcome(BaseModel):
    state: Literal["creating"] = "creating"


class CompletedOutcome(BaseModel):
    state: Literal["completed"] = "completed"
    completed_at: datetime
    duration_ms: Optional[int] = None


class FailedOutcome(BaseModel):
    state: Literal["failed"] = "failed"
    failed_at: datetime
    error_code: ErrorCode
    error: str
    provider_error: Optional[ProviderErrorDetail] = None
    duration_ms: Optional[int] = None


JobOutcomeState = Annotated[
    Union[PendingOutcome, CompletedOutcome, FailedOutcome], Field(discriminator="state")
]


class LandscapeLoading(BaseModel):
    state: Literal["loading"] = "loading"
    provider_id: int
    credit_cost: Decimal
    requested_at: datetime
    previous_filename: Optional[str] = None


class LandscapeReady(BaseModel):
    state: Literal["ready"] = "ready"
    url: str
    filename: str
    completed_at: datetime


class LandscapeFailed(BaseModel):
    state: Literal["failed"] = "failed"
    message: str
    error_code: ErrorCode
    failed_at: datetime
    credit_cost: Decimal = Decimal("0")
    credits_refunded: bool = False


LandscapeState = Annotated[
    Union[LandscapeLoading, LandscapeReady, LandscapeFailed], Field(discriminator="state")
]


def duration_between(started_at: datetime, finished_at: datetime) -> Optional[int]:
    """Milliseconds between two instants, or None when the clock went backwards."""
    delta_ms = int((finished_at - started_at).total_seconds() * 1000)
    return delta_ms if delta_ms >= 0 else None


class JobMetadata(BaseModel):
    """Audit and lineage record for one creation or trial job."""

    model_config = ConfigDict(extra="ignore")

    provider_id: Optional[int] = None
    provider_name: Optional[str] = None
    method: Optional[str] = None
    method_name: Optional[str] = None
    args: dict[str, Any] = Field(default_factory=dict)
    creation_token: Optional[str] = None

    attempt: int = 1
    started_at: datetime
    timeout_at: Optional[datetime] = None

    credit_cost: Decimal = Decimal("0")
    credits_refunded: bool = False

    mutate_of_id: Optional[int] = None
    history: list[int] = Field(default_factory=list)

    pool_refill: bool = False
    from_cache: bool = False
    cached_at: Optional[datetime] = None
    original_created_at: Optional[datetime] = None

    outcome: JobOutcomeState = Field(default_factory=PendingOutcome)
    landscape: Optional[LandscapeState] = None

    @field_validator("creation_token")
    @classmethod
    def _short_tokens_are_dropped(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value if len(value) >= 10 else None

    @property
    def is_paid(self) -> bool:
        return self.credit_cost > 0

    @property
    def error_code(self) -> Optional[ErrorCode]:
        if isinstance(self.outcome, FailedOutcome):
            return self.outcome.error_code
        return None

    def to_json(self) -> dict[str, Any]:
        """Serialize for the JSON column (datetimes and decimals become strings)."""
        return self.model_dump(mode="json", exclude_none=True)
