"""Unit tests for retry helpers."""

from unittest.mock import MagicMock

import pytest

from utils.retry import RetryConfig, calculate_backoff_delay, retry_sync


def test_retry_config_defaults() -> None:
    """Test default retry configuration."""
    config = RetryConfig()
    assert config.max_attempts == 3
    assert config.retryable_exceptions == (Exception,)


def test_retry_config_rejects_zero_attempts() -> None:
    """Test that at least one attempt is required."""
    with pytest.raises(ValueError, match="at least 1"):
        RetryConfig(max_attempts=0)


def test_backoff_delay() -> None:
    """Test exponential backoff without jitter."""
    config = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter=False)
    assert calculate_backoff_delay(0, config) == 1.0
    assert calculate_backoff_delay(1, config) == 2.0
    assert calculate_backoff_delay(2, config) == 4.0
    assert calculate_backoff_delay(3, config) == 5.0


def test_backoff_delay_jitter() -> None:
    """Test that jitter adds at most 10%."""
    config = RetryConfig(initial_delay=1.0, jitter=True)
    for _ in range(20):
        assert 1.0 <= calculate_backoff_delay(0, config) <= 1.1


def test_retry_sync_success_after_failures() -> None:
    """Test a call that succeeds on the last attempt."""
    func = MagicMock(side_effect=[OSError("one"), OSError("two"), "ok"])
    sleep = MagicMock()

    result = retry_sync(func, "arg", key="value", config=RetryConfig(jitter=False), sleep=sleep)

    assert result == "ok"
    assert func.call_count == 3
    func.assert_called_with("arg", key="value")
    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_retry_sync_exhausted() -> None:
    """Test that the last exception is re-raised."""
    func = MagicMock(side_effect=OSError("down"))
    with pytest.raises(OSError, match="down"):
        retry_sync(func, config=RetryConfig(max_attempts=2), sleep=MagicMock())
    assert func.call_count == 2


def test_retry_sync_not_retryable() -> None:
    """Test that other exceptions propagate immediately."""
    func = MagicMock(side_effect=KeyError("nope"))
    sleep = MagicMock()
    with pytest.raises(KeyError):
        retry_sync(
            func,
            config=RetryConfig(retryable_exceptions=(OSError,)),
            sleep=sleep,
        )
    assert func.call_count == 1
    sleep.assert_not_called()
