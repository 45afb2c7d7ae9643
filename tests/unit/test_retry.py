"""Unit tests for the retry policy."""

from unittest.mock import MagicMock

import pytest
import requests

from box_migrator.core.config import RetryConfig
from box_migrator.core.retry import RetryPolicy
from box_migrator.exceptions import (
    BoxAPIError,
    FaultKind,
    JobStoreError,
    PermanentFault,
    RateLimited,
    RetriesExhaustedError,
)


def _failing(*errors, result="ok"):
    """Callable that raises each error in turn, then returns ``result``."""
    remaining = list(errors)
    fn = MagicMock()

    def side_effect():
        if remaining:
            raise remaining.pop(0)
        return result

    fn.side_effect = side_effect
    return fn


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    return RetryPolicy(
        transient_backoff_seconds=2.0, rate_limit_base_seconds=2.0, sleep=sleeps.append
    )


class TestBackoff:
    """Tests for the waits chosen per fault classification."""

    def test_rate_limit_backoff_is_exponential(self, policy, sleeps):
        fn = _failing(*[BoxAPIError(429, method="GET", url="/u")] * 4)

        assert policy.attempt(fn, 5, label="list") == "ok"
        assert sleeps == [2.0, 4.0, 8.0, 16.0]
        assert fn.call_count == 5

    def test_transient_backoff_is_fixed(self, policy, sleeps):
        fn = _failing(BoxAPIError(503), requests.ConnectionError("reset"))

        assert policy.attempt(fn, 3) == "ok"
        assert sleeps == [2.0, 2.0]

    def test_client_timeout_is_retried(self, policy, sleeps):
        fn = _failing(requests.Timeout("read timed out"))
        assert policy.attempt(fn, 2) == "ok"
        assert sleeps == [2.0]

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            RetryConfig(transient_backoff_seconds=0.5, rate_limit_base_seconds=3.0)
        )
        assert policy.backoff_seconds(RateLimited("x"), 2) == 9.0
        assert policy.backoff_seconds(PermanentFault("x"), 2) == 0.5


class TestGivingUp:
    """Tests for exhaustion and non-retryable faults."""

    def test_exhaustion_raises_with_last_fault(self, policy, sleeps):
        fn = _failing(*[BoxAPIError(500, body="oops")] * 3)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            policy.attempt(fn, 3, label="move file 1", correlation_id="cid")

        error = exc_info.value
        assert error.attempts == 3
        assert error.kind == FaultKind.TRANSIENT_SERVER_FAULT
        assert error.status_code == 500
        assert error.response_body == "oops"
        assert error.correlation_id == "cid"
        assert error.retryable is False
        # No sleep after the final attempt
        assert sleeps == [2.0, 2.0]

    def test_permanent_fault_is_not_retried(self, policy, sleeps):
        fn = _failing(BoxAPIError(404, body="not_found"))

        with pytest.raises(PermanentFault) as exc_info:
            policy.attempt(fn, 5, label="get folder")

        assert fn.call_count == 1
        assert sleeps == []
        assert exc_info.value.label == "get folder"
        assert isinstance(exc_info.value.__cause__, BoxAPIError)

    def test_unexpected_exception_is_permanent(self, policy):
        fn = _failing(KeyError("id"))
        with pytest.raises(PermanentFault, match="KeyError"):
            policy.attempt(fn, 3)
        assert fn.call_count == 1

    def test_migrator_errors_propagate_unchanged(self, policy):
        fn = _failing(JobStoreError("locked"))
        with pytest.raises(JobStoreError):
            policy.attempt(fn, 3)
        assert fn.call_count == 1

    def test_max_attempts_must_be_positive(self, policy):
        with pytest.raises(ValueError):
            policy.attempt(lambda: "ok", 0)


class TestConflict:
    """Tests for the lookup-on-conflict path."""

    def test_conflict_runs_lookup_instead_of_retrying(self, policy, sleeps):
        fn = _failing(BoxAPIError(409, body='{"code": "item_name_in_use"}'))
        lookup = MagicMock(return_value={"id": "42"})

        assert policy.attempt(fn, 3, on_conflict=lookup) == {"id": "42"}
        assert fn.call_count == 1
        lookup.assert_called_once_with()
        assert sleeps == []

    def test_conflict_without_lookup_is_raised(self, policy):
        fn = _failing(BoxAPIError(409))
        with pytest.raises(Exception) as exc_info:
            policy.attempt(fn, 3)
        assert exc_info.value.kind == FaultKind.CONFLICT
        assert fn.call_count == 1
