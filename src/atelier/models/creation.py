"""Creation entity - a user-owned image generation job with lifecycle status."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utcnow
from atelier.models.metadata import (
    CompletedOutcome,
    ErrorCode,
    FailedOutcome,
    JobMetadata,
    ProviderErrorDetail,
    duration_between,
)


class CreationStatus(str, Enum):
    """Job lifecycle status, shared by creations and trial creations."""

    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class JobStateMixin:
    """State transitions shared by every table that stores a generation job.

    Transitions only ever leave `creating`; a terminal row is never rewritten
    by reconciliation. `reset_for_retry` is the one way back into `creating`.
    Host tables provide `status`, `meta`, `filename`, `url` and the image fields.
    """

    @property
    def job_meta(self) -> JobMetadata:
        return JobMetadata.model_validate(self.meta)

    def set_job_meta(self, meta: JobMetadata) -> None:
        # Always assign a fresh dict so the ORM sees the change
        self.meta = meta.to_json()

    def is_past_timeout(self, now: datetime) -> bool:
        timeout_at = self.job_meta.timeout_at
        return timeout_at is not None and now > timeout_at

    def mark_completed(
        self,
        *,
        filename: str,
        url: str,
        width: int,
        height: int,
        color: Optional[str],
        completed_at: datetime,
    ) -> None:
        """Transition from creating to completed.

        Args:
            filename: Storage key of the uploaded image
            url: Public URL of the uploaded image
            width: Declared image width
            height: Declared image height
            color: Declared dominant color, if any
            completed_at: Completion instant used for duration_ms

        Raises:
            InvalidStateTransition: If current status is not creating
        """
        if self.status != CreationStatus.CREATING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. Job must be in creating state."
            )
        meta = self.job_meta
        meta.outcome = CompletedOutcome(
            completed_at=completed_at,
            duration_ms=duration_between(meta.started_at, completed_at),
        )
        self.filename = filename
        self.url = url
        self.width = width
        self.height = height
        self.color = color
        self.status = CreationStatus.COMPLETED
        self.set_job_meta(meta)

    def mark_failed(
        self,
        *,
        error_code: ErrorCode,
        message: str,
        failed_at: datetime,
        provider_error: Optional[ProviderErrorDetail] = None,
    ) -> None:
        """Transition from creating to failed.

        Raises:
            InvalidStateTransition: If current status is not creating
        """
        if self.status != CreationStatus.CREATING:
            raise InvalidStateTransition(
                f"Cannot mark failed from {self.status.value}. Job must be in creating state."
            )
        meta = self.job_meta
        meta.outcome = FailedOutcome(
            failed_at=failed_at,
            error_code=error_code,
            error=message,
            provider_error=provider_error,
            duration_ms=duration_between(meta.started_at, failed_at),
        )
        self.status = CreationStatus.FAILED
        self.set_job_meta(meta)

    def mark_refunded(self) -> None:
        meta = self.job_meta
        meta.credits_refunded = True
        self.set_job_meta(meta)


class Creation(JobStateMixin, SQLModel, table=True):
    """Creation represents one user-owned generation attempt, retried in place."""

    __tablename__ = "creations"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    status: CreationStatus = Field(default=CreationStatus.CREATING, index=True)
    filename: str = Field(max_length=255)
    url: Optional[str] = Field(default=None)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    color: Optional[str] = Field(default=None, max_length=32)
    published: bool = Field(default=False)
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    def reset_for_retry(self, *, meta: JobMetadata, filename: str) -> None:
        """Put a failed or abandoned creation back into creating.

        Args:
            meta: Fresh metadata for the new attempt (lineage already carried over)
            filename: New placeholder filename

        Raises:
            InvalidStateTransition: If the creation already completed
        """
        if self.status == CreationStatus.COMPLETED:
            raise InvalidStateTransition("Cannot retry a completed creation.")
        self.status = CreationStatus.CREATING
        self.filename = filename
        self.url = None
        self.width = None
        self.height = None
        self.color = None
        self.set_job_meta(meta)
