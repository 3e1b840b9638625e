"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from atelier.repositories.creation import CreationRepository
from atelier.repositories.credit import CreditLedgerRepository
from atelier.repositories.provider import ProviderRepository
from atelier.repositories.trial import TrialCreationRepository, TrialRequestRepository

__all__ = [
    "CreationRepository",
    "CreditLedgerRepository",
    "ProviderRepository",
    "TrialCreationRepository",
    "TrialRequestRepository",
]
