# tests/unit/test_retry.py

from unittest.mock import MagicMock

import pytest

from photo_bundler.exceptions import S3AccessDeniedError, S3Error, S3ThrottlingError
from photo_bundler.retry import RetryPolicy


def test_exponential_delays_are_capped():
    policy = RetryPolicy(max_attempts=10, backoff_seconds=1.0, max_backoff=5.0)

    assert [policy.compute_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_unbounded_policy_uses_fixed_delay():
    policy = RetryPolicy.unbounded(5.0)

    assert policy.allows_retry(1_000)
    assert policy.compute_delay(1) == policy.compute_delay(50) == 5.0


def test_call_retries_until_success():
    # Arrange
    func = MagicMock(side_effect=[S3ThrottlingError("op"), S3ThrottlingError("op"), "ok"])
    sleep = MagicMock()
    on_retry = MagicMock()

    # Act
    result = RetryPolicy(max_attempts=3, backoff_seconds=1.0).call(
        func, retry_on=(S3Error,), on_retry=on_retry, sleep=sleep
    )

    # Assert
    assert result == "ok"
    assert func.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
    assert [c.args[0] for c in on_retry.call_args_list] == [1, 2]


def test_call_reraises_after_last_attempt():
    func = MagicMock(side_effect=S3ThrottlingError("op"))
    sleep = MagicMock()

    with pytest.raises(S3ThrottlingError):
        RetryPolicy(max_attempts=3).call(func, retry_on=(S3Error,), sleep=sleep)

    assert func.call_count == 3
    assert sleep.call_count == 2


def test_call_gives_up_immediately_on_permanent_errors():
    func = MagicMock(side_effect=S3AccessDeniedError("b", "k"))
    sleep = MagicMock()

    with pytest.raises(S3AccessDeniedError):
        RetryPolicy(max_attempts=3).call(
            func, retry_on=(S3Error,), give_up_on=(S3AccessDeniedError,), sleep=sleep
        )

    assert func.call_count == 1
    sleep.assert_not_called()


def test_call_does_not_catch_unlisted_errors():
    func = MagicMock(side_effect=ValueError("bug"))

    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=3).call(func, retry_on=(S3Error,), sleep=MagicMock())

    assert func.call_count == 1
