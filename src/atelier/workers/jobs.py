"""Job payloads passed through the scheduler and the outcomes jobs report.

Payloads carry ids only; everything else is re-read from the database when
the job runs, so a redelivered or stale payload can never resurrect old
arguments.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from atelier.models.metadata import ErrorCode, ProviderErrorDetail
from atelier.services.exceptions import InvalidJobPayloadError, ProviderCallError


class CreationJobPayload(BaseModel):
    job_type: Literal["creation"] = "creation"
    creation_id: int
    user_id: int
    provider_id: int
    attempt: int = 1


class TrialJobPayload(BaseModel):
    job_type: Literal["trial"] = "trial"
    trial_id: int
    provider_id: int


class LandscapeJobPayload(BaseModel):
    job_type: Literal["landscape"] = "landscape"
    creation_id: int
    user_id: int
    provider_id: int
    requested_at: datetime


JobPayload = Annotated[
    Union[CreationJobPayload, TrialJobPayload, LandscapeJobPayload],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(raw: Any) -> JobPayload:
    """Validate a raw payload (e.g. a broker callback body).

    Raises:
        InvalidJobPayloadError: Unknown job type or missing/invalid fields
    """
    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidJobPayloadError(f"Invalid job payload: {e}") from e


def job_id_of(payload: JobPayload) -> int:
    if isinstance(payload, TrialJobPayload):
        return payload.trial_id
    return payload.creation_id


class JobOutcome(str, Enum):
    """What one execution of a job did."""

    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    ALREADY_HANDLED = "already_handled"


@dataclass
class JobResult:
    """Outcome value returned to the scheduler; jobs never raise for provider failures."""

    outcome: JobOutcome
    job_id: int
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    filename: Optional[str] = None
    url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome != JobOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, "outcome": self.outcome.value, "id": self.job_id}
        if self.error_code is not None:
            data["error_code"] = self.error_code.value
            data["error"] = self.error
        if self.url is not None:
            data["url"] = self.url
        return data


@dataclass
class JobFailure:
    """Classified failure about to be recorded on a job row."""

    error_code: ErrorCode
    message: str
    detail: Optional[ProviderErrorDetail] = None

    @classmethod
    def from_provider_error(cls, error: ProviderCallError) -> "JobFailure":
        return cls(error_code=error.error_code, message=error.message, detail=error.detail)
