"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from atelier.models.creation import Creation, CreationStatus, InvalidStateTransition
from atelier.models.credit import UserCredits
from atelier.models.metadata import ErrorCode, JobMetadata
from atelier.models.provider import Provider, ProviderStatus
from atelier.models.trial import TrialCreation, TrialRequest

__all__ = [
    "Creation",
    "CreationStatus",
    "InvalidStateTransition",
    "UserCredits",
    "ErrorCode",
    "JobMetadata",
    "Provider",
    "ProviderStatus",
    "TrialCreation",
    "TrialRequest",
]
