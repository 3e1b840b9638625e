"""Service error hierarchy for the creation job pipeline.

- ServiceError: Base for all service errors
- ProviderCallError family: provider invocation failures, each mapped to the
  error code recorded on the failed job
- SubmissionError family: caller-facing rejections raised before any money moves
"""

from decimal import Decimal
from typing import Any, Optional

from atelier.models.metadata import ErrorCode, ProviderErrorDetail


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


# Provider invocation errors
class ProviderCallError(ServiceError):
    """Provider could not produce an image.

    Attributes:
        error_code: Error code recorded on the failed job
        detail: Size-capped provider diagnostics, when the provider answered
    """

    error_code = ErrorCode.PROVIDER_ERROR

    def __init__(self, message: str, detail: Optional[ProviderErrorDetail] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ProviderTimeoutError(ProviderCallError):
    """Provider call exceeded the hard deadline and was cancelled."""

    error_code = ErrorCode.TIMEOUT


class ProviderResponseError(ProviderCallError):
    """Provider answered with a non-2xx status."""

    def __init__(
        self,
        message: str,
        status: int,
        status_text: Optional[str] = None,
        content_type: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(
            message,
            ProviderErrorDetail(
                status=status, status_text=status_text, content_type=content_type, body=body
            ),
        )
        self.status = status


class ProviderTransportError(ProviderCallError):
    """Connection-level failure other than the deadline."""

    pass


class ImageFormatError(ProviderCallError):
    """Provider returned bytes that cannot be decoded as an image."""

    pass


class StorageError(ServiceError):
    """Persisting or deleting an image failed."""

    error_code = ErrorCode.UPLOAD_FAILED


class SchedulingError(ServiceError):
    """A job could not be handed to the scheduler."""

    pass


class ShareTokenError(ServiceError):
    """A share token could not be minted or verified."""

    pass


# Submission errors (reported to the caller, nothing charged)
class SubmissionError(ServiceError):
    """Base exception for rejected submissions."""

    pass


class ProviderUnavailableError(SubmissionError):
    """Provider is missing or not active."""

    pass


class MethodNotAvailableError(SubmissionError):
    """Provider does not expose the requested method."""

    pass


class InsufficientCreditsError(SubmissionError):
    """Balance is lower than the job cost."""

    def __init__(self, required: Decimal, current: Decimal):
        super().__init__(f"Insufficient credits: required {required}, current {current}")
        self.required = required
        self.current = current


class CreationNotFoundError(SubmissionError):
    """Creation does not exist or is not visible to the requester."""

    pass


class RetryNotAllowedError(SubmissionError):
    """Creation is completed or still within its provider deadline."""

    pass


class LandscapeNotAllowedError(SubmissionError):
    """Creation is not in a state that supports a landscape."""

    pass


class LandscapeInProgressError(LandscapeNotAllowedError):
    """A landscape is already generating for this creation."""

    pass


class TrialNotFoundError(SubmissionError):
    """No trial result with that filename belongs to the client."""

    pass


class InvalidJobPayloadError(ValueError):
    """Job payload is missing required fields (caller bug, not a runtime failure)."""

    pass
