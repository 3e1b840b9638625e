"""Anonymous trial entities - pooled trial creations and the per-client request links."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from atelier.core.timezone import utcnow
from atelier.models.creation import CreationStatus, JobStateMixin


class TrialCreation(JobStateMixin, SQLModel, table=True):
    """Anonymous generation result, shareable across clients for the same prompt.

    Rows with `source_trial_id` set are cache copies: they point at the
    stored file of another row and are not pool members themselves.
    """

    __tablename__ = "trial_creations"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True, max_length=128)
    prompt: Optional[str] = Field(default=None, index=True)
    source_trial_id: Optional[int] = Field(default=None)
    status: CreationStatus = Field(default=CreationStatus.CREATING, index=True)
    filename: str = Field(max_length=255, index=True)
    url: Optional[str] = Field(default=None)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    color: Optional[str] = Field(default=None, max_length=32)
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(
        default_factory=utcnow, sa_type=DateTime(timezone=True), index=True
    )


class TrialRequest(SQLModel, table=True):
    """Links an anonymous client + prompt to the trial creation serving it."""

    __tablename__ = "trial_requests"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(index=True, max_length=128)
    prompt: str
    trial_id: Optional[int] = Field(default=None, foreign_key="trial_creations.id")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    fulfilled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
