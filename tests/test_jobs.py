"""Job payload parsing and result serialization tests."""

import pytest

from atelier.models.metadata import ErrorCode
from atelier.services.exceptions import InvalidJobPayloadError
from atelier.workers.jobs import (
    CreationJobPayload,
    JobOutcome,
    JobResult,
    LandscapeJobPayload,
    TrialJobPayload,
    job_id_of,
    parse_job_payload,
)


def test_parse_creation_payload_defaults_attempt():
    payload = parse_job_payload(
        {"job_type": "creation", "creation_id": 5, "user_id": 1, "provider_id": 2}
    )

    assert isinstance(payload, CreationJobPayload)
    assert payload.attempt == 1
    assert job_id_of(payload) == 5


def test_parse_trial_and_landscape_payloads():
    trial = parse_job_payload({"job_type": "trial", "trial_id": 9, "provider_id": 2})
    landscape = parse_job_payload(
        {
            "job_type": "landscape",
            "creation_id": 5,
            "user_id": 1,
            "provider_id": 2,
            "requested_at": "2026-03-01T12:00:00Z",
        }
    )

    assert isinstance(trial, TrialJobPayload)
    assert job_id_of(trial) == 9
    assert isinstance(landscape, LandscapeJobPayload)
    assert landscape.requested_at.tzinfo is not None


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"job_type": "video"},
        {"job_type": "creation", "creation_id": 5},
        {"job_type": "trial", "trial_id": "not-a-number", "provider_id": 1},
        ["creation"],
    ],
)
def test_invalid_payloads_raise(raw):
    with pytest.raises(InvalidJobPayloadError):
        parse_job_payload(raw)


class TestJobResult:
    def test_completed_result(self):
        result = JobResult(
            outcome=JobOutcome.COMPLETED, job_id=5, filename="f.png", url="https://cdn/f.png"
        )

        assert result.to_dict() == {
            "ok": True,
            "outcome": "completed",
            "id": 5,
            "url": "https://cdn/f.png",
        }

    def test_failed_result_carries_error(self):
        result = JobResult(
            outcome=JobOutcome.FAILED,
            job_id=5,
            error_code=ErrorCode.TIMEOUT,
            error="Provider did not respond within 50s",
        )

        assert result.to_dict() == {
            "ok": False,
            "outcome": "failed",
            "id": 5,
            "error_code": "timeout",
            "error": "Provider did not respond within 50s",
        }

    def test_already_handled_is_ok(self):
        assert JobResult(outcome=JobOutcome.ALREADY_HANDLED, job_id=1).ok is True
