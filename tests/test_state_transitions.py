"""State transition tests for job rows and their typed metadata.

Tests focus on validating the job lifecycle state machine:
- creating -> completed / failed are the only transitions out of creating
- Terminal rows reject further transitions with clear error messages
- Retry is the one way back into creating, and never from completed
- Durations are dropped, not clamped, when the clock went backwards
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from atelier.models.creation import Creation, CreationStatus, InvalidStateTransition
from atelier.models.metadata import (
    CompletedOutcome,
    ErrorCode,
    FailedOutcome,
    JobMetadata,
    LandscapeFailed,
    LandscapeReady,
    PendingOutcome,
)
from atelier.models.trial import TrialCreation

STARTED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _creation(**meta_fields) -> Creation:
    meta = JobMetadata(started_at=STARTED, credit_cost=Decimal("3"), **meta_fields)
    return Creation(user_id=1, filename="creating_1_0.png", meta=meta.to_json())


def test_completed_transition_records_outcome():
    creation = _creation()

    creation.mark_completed(
        filename="1_5_1700000000000_abcdefg.png",
        url="https://cdn.atelier.test/creations/1_5_1700000000000_abcdefg.png",
        width=1024,
        height=768,
        color="#112233",
        completed_at=STARTED + timedelta(seconds=4),
    )

    assert creation.status == CreationStatus.COMPLETED
    assert creation.width == 1024
    assert creation.height == 768
    outcome = creation.job_meta.outcome
    assert isinstance(outcome, CompletedOutcome)
    assert outcome.duration_ms == 4000


def test_failed_transition_records_error_code():
    creation = _creation()

    creation.mark_failed(
        error_code=ErrorCode.PROVIDER_ERROR,
        message="boom",
        failed_at=STARTED + timedelta(milliseconds=250),
    )

    assert creation.status == CreationStatus.FAILED
    meta = creation.job_meta
    assert meta.error_code == ErrorCode.PROVIDER_ERROR
    assert isinstance(meta.outcome, FailedOutcome)
    assert meta.outcome.error == "boom"
    assert meta.outcome.duration_ms == 250


def test_negative_duration_is_dropped():
    creation = _creation()

    creation.mark_failed(
        error_code=ErrorCode.TIMEOUT,
        message="late",
        failed_at=STARTED - timedelta(seconds=1),
    )

    assert creation.job_meta.outcome.duration_ms is None


@pytest.mark.parametrize("terminal", [CreationStatus.COMPLETED, CreationStatus.FAILED])
def test_terminal_rows_reject_transitions(terminal):
    creation = _creation()
    creation.status = terminal

    with pytest.raises(InvalidStateTransition) as exc_info:
        creation.mark_failed(error_code=ErrorCode.TIMEOUT, message="x", failed_at=STARTED)
    assert "creating" in str(exc_info.value)

    with pytest.raises(InvalidStateTransition):
        creation.mark_completed(
            filename="f.png", url="u", width=1, height=1, color=None, completed_at=STARTED
        )


def test_reset_for_retry_rejects_completed():
    creation = _creation()
    creation.status = CreationStatus.COMPLETED

    with pytest.raises(InvalidStateTransition):
        creation.reset_for_retry(meta=JobMetadata(started_at=STARTED), filename="creating_1_1.png")


def test_reset_for_retry_clears_result_fields():
    creation = _creation()
    creation.mark_failed(error_code=ErrorCode.TIMEOUT, message="late", failed_at=STARTED)

    creation.reset_for_retry(
        meta=JobMetadata(started_at=STARTED, attempt=2, history=[7, 12]),
        filename="creating_1_2.png",
    )

    assert creation.status == CreationStatus.CREATING
    assert creation.url is None
    assert creation.filename == "creating_1_2.png"
    meta = creation.job_meta
    assert meta.attempt == 2
    assert meta.history == [7, 12]
    assert isinstance(meta.outcome, PendingOutcome)


def test_trial_rows_share_the_state_machine():
    trial = TrialCreation(
        client_id="client-a",
        prompt="sunset",
        filename="creating_anon_0.png",
        meta=JobMetadata(started_at=STARTED).to_json(),
    )

    trial.mark_completed(
        filename="anon_1_0_abc.png",
        url="https://cdn.atelier.test/anon/anon_1_0_abc.png",
        width=512,
        height=512,
        color=None,
        completed_at=STARTED,
    )

    assert trial.status == CreationStatus.COMPLETED
    with pytest.raises(InvalidStateTransition):
        trial.mark_failed(error_code=ErrorCode.TIMEOUT, message="x", failed_at=STARTED)


def test_is_past_timeout():
    creation = _creation(timeout_at=STARTED + timedelta(seconds=52))

    assert creation.is_past_timeout(STARTED + timedelta(seconds=52)) is False
    assert creation.is_past_timeout(STARTED + timedelta(seconds=53)) is True


class TestJobMetadata:
    def test_short_creation_token_is_dropped(self):
        meta = JobMetadata(started_at=STARTED, creation_token="short")
        assert meta.creation_token is None

    def test_long_creation_token_is_kept(self):
        meta = JobMetadata(started_at=STARTED, creation_token="  tok-1234567890  ")
        assert meta.creation_token == "tok-1234567890"

    def test_json_round_trip_keeps_union_variants(self):
        meta = JobMetadata(
            started_at=STARTED,
            credit_cost=Decimal("2.5"),
            landscape=LandscapeReady(
                url="https://cdn.atelier.test/creations/landscape/x.png",
                filename="landscape/x.png",
                completed_at=STARTED,
            ),
        )

        restored = JobMetadata.model_validate(meta.to_json())

        assert restored.credit_cost == Decimal("2.5")
        assert isinstance(restored.landscape, LandscapeReady)
        assert restored.landscape.filename == "landscape/x.png"

    def test_failed_landscape_carries_refund_state(self):
        raw = {
            "started_at": STARTED.isoformat(),
            "landscape": {
                "state": "failed",
                "message": "The image failed to generate.",
                "error_code": "provider_error",
                "failed_at": STARTED.isoformat(),
                "credit_cost": "1",
            },
        }

        meta = JobMetadata.model_validate(raw)

        assert isinstance(meta.landscape, LandscapeFailed)
        assert meta.landscape.credits_refunded is False
        assert meta.is_paid is False
