"""
Tests for Retry Handler
Tests backoff bounds and single-RPC transient retry
"""

from unittest.mock import Mock

import grpc
import pytest

from execution.context import Context
from execution.errors import Canceled, DeadlineExceeded, StatusError
from execution.retry_handler import BackoffPolicy, RetryHandler


def unavailable():
    return StatusError("Temporary unavailable", code=grpc.StatusCode.UNAVAILABLE)


class TestBackoffPolicy:
    """Test BackoffPolicy"""

    def test_delay_within_half_to_full_cap(self):
        policy = BackoffPolicy(initial_delay=1.0, max_delay=32.0, multiplier=2.0)

        for attempt in range(8):
            cap = min(1.0 * 2.0 ** attempt, 32.0)
            for _ in range(20):
                delay = policy.get_delay(attempt)
                assert cap / 2 <= delay <= cap

    def test_delay_capped_at_max(self):
        policy = BackoffPolicy(initial_delay=1.0, max_delay=5.0, multiplier=3.0)

        assert policy.get_delay(50) <= 5.0

    @pytest.mark.parametrize("kwargs", [
        {"initial_delay": 0},
        {"initial_delay": 2.0, "max_delay": 1.0},
        {"multiplier": 0.5},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestRetryHandler:
    """Test RetryHandler"""

    @pytest.fixture
    def handler(self, fast_backoff):
        return RetryHandler(backoff=fast_backoff, logger=Mock())

    def test_success_without_retry(self, handler):
        func = Mock(return_value="ok")

        assert handler.execute_with_retry(Context.background(), func, 1, key="v") == "ok"
        func.assert_called_once_with(1, key="v")

    def test_transient_errors_are_retried(self, handler):
        func = Mock(side_effect=[unavailable(), unavailable(), "ok"])
        on_retry = Mock()

        result = handler.execute_with_retry(Context.background(), func, on_retry=on_retry)

        assert result == "ok"
        assert func.call_count == 3
        assert on_retry.call_count == 2
        handler.logger.info.assert_called()

    def test_fatal_error_is_raised_unchanged(self, handler):
        error = StatusError("bad", code=grpc.StatusCode.INVALID_ARGUMENT)
        func = Mock(side_effect=error)

        with pytest.raises(StatusError) as exc_info:
            handler.execute_with_retry(Context.background(), func)

        assert exc_info.value is error
        func.assert_called_once()

    def test_abort_is_not_retried_locally(self, handler):
        func = Mock(side_effect=StatusError("aborted", code=grpc.StatusCode.ABORTED))

        with pytest.raises(StatusError):
            handler.execute_with_retry(Context.background(), func)

        func.assert_called_once()

    def test_cancelled_context_skips_call(self, handler):
        ctx, cancel = Context.background().with_cancel()
        cancel()
        func = Mock()

        with pytest.raises(Canceled):
            handler.execute_with_retry(ctx, func)

        func.assert_not_called()

    def test_deadline_bounds_retries(self, handler):
        ctx = Context.background().with_timeout(0.05)

        def always_unavailable():
            raise unavailable()

        func = Mock(side_effect=always_unavailable)

        with pytest.raises(DeadlineExceeded):
            handler.execute_with_retry(ctx, func)

        assert func.call_count > 1
