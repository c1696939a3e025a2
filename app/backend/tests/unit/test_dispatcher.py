"""Tests for the queue dispatcher and its retry policy."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import Mock

sys.path.append(str(Path(__file__).resolve().parents[4]))

import pytest
from kombu.exceptions import OperationalError

from app.backend.src.core.errors import DispatchError, OcrTimeoutError, JobInputError
from app.backend.src.core.redis_queue import InMemoryDispatchLedger
from app.backend.src.services.dispatcher import (
    PROCESS_JOB_TASK,
    STATE_ACTIVE,
    STATE_FAILED,
    STATE_QUEUED,
    STATE_SUCCEEDED,
    QueueDispatcher,
    RetryPolicy,
)


def test_retry_policy_backs_off_exponentially() -> None:
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    error = OcrTimeoutError(300, "http://ocr/layout-parsing")

    assert policy.next_delay(1, error) == 1.0
    assert policy.next_delay(2, error) == 2.0
    assert policy.next_delay(3, error) is None


def test_retry_policy_respects_non_retryable_errors() -> None:
    policy = RetryPolicy()

    assert policy.should_retry(1, JobInputError("no input")) is False
    assert policy.should_retry(1, RuntimeError("boom")) is True


def test_retry_policy_caps_delay() -> None:
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)

    assert policy.delay_for(6) == 5.0


def test_dispatch_sends_task_keyed_by_job_id(dispatcher: QueueDispatcher, celery_app: Mock, ledger: InMemoryDispatchLedger) -> None:
    dispatch_id = dispatcher.dispatch("job_1", "org_1", "usr_1")

    assert dispatch_id == "job_1"
    celery_app.send_task.assert_called_once()
    args, kwargs = celery_app.send_task.call_args
    assert args == (PROCESS_JOB_TASK,)
    assert kwargs["task_id"] == "job_1"
    assert kwargs["queue"] == "jobs"
    assert kwargs["kwargs"] == {"job_id": "job_1", "organization_id": "org_1", "user_id": "usr_1"}
    assert ledger.read("job_1")["state"] == STATE_QUEUED


def test_redispatch_of_live_job_is_deduplicated(dispatcher: QueueDispatcher, celery_app: Mock) -> None:
    dispatcher.dispatch("job_1", "org_1", "usr_1")
    dispatcher.dispatch("job_1", "org_1", "usr_1")

    assert celery_app.send_task.call_count == 1


def test_redispatch_after_terminal_state_sends_again(dispatcher: QueueDispatcher, celery_app: Mock) -> None:
    dispatcher.dispatch("job_1", "org_1", "usr_1")
    dispatcher.record_attempt("job_1", 3, STATE_FAILED)

    dispatcher.dispatch("job_1", "org_1", "usr_1")

    assert celery_app.send_task.call_count == 2


def test_dispatch_raises_when_broker_unreachable(ledger: InMemoryDispatchLedger) -> None:
    celery_app = Mock()
    celery_app.send_task.side_effect = OperationalError("connection refused")
    dispatcher = QueueDispatcher(celery_app, ledger)

    with pytest.raises(DispatchError):
        dispatcher.dispatch("job_1", "org_1", "usr_1")

    # A failed dispatch must not block a later retry of the submission.
    assert ledger.read("job_1") is None


def test_lease_is_exclusive_until_released(dispatcher: QueueDispatcher) -> None:
    lease = dispatcher.acquire_lease("job_1")
    assert lease is not None
    assert dispatcher.acquire_lease("job_1") is None

    lease.release()

    assert dispatcher.acquire_lease("job_1") is not None


def test_record_attempt_tracks_state(dispatcher: QueueDispatcher, ledger: InMemoryDispatchLedger) -> None:
    dispatcher.dispatch("job_1", "org_1", "usr_1")
    dispatcher.record_attempt("job_1", 1, STATE_ACTIVE)
    assert ledger.read("job_1")["state"] == STATE_ACTIVE

    dispatcher.record_attempt("job_1", 1, STATE_SUCCEEDED)
    record = ledger.read("job_1")
    assert record["state"] == STATE_SUCCEEDED
    assert record["attempts"] == 1
    assert record["organization_id"] == "org_1"
