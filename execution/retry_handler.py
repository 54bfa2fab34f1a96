"""
Retry Handler - Backoff policy and single-RPC retry for transient failures
"""

import random
from typing import Any, Callable, Optional

import structlog

from .context import Context
from .errors import ErrorClassifier

logger = structlog.get_logger(__name__)


class BackoffPolicy:
    """
    Randomized exponential backoff, capped at a maximum delay

    Stateless: the retry index is a pure input, so one policy can be shared
    by any number of concurrent transactions.
    """

    def __init__(self,
                 initial_delay: float = 0.02,
                 max_delay: float = 32.0,
                 multiplier: float = 1.3):
        """
        Initialize backoff policy

        Args:
            initial_delay: Upper bound of the first delay in seconds
            max_delay: Maximum delay between retries in seconds
            multiplier: Growth factor applied per retry
        """
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")

        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before the next retry

        Args:
            attempt: Retry number (0-indexed)

        Returns:
            Delay in seconds, uniformly drawn from [cap / 2, cap]
        """
        ceiling = self.initial_delay * (self.multiplier ** attempt)

        # Cap at max delay
        ceiling = min(ceiling, self.max_delay)

        return ceiling - random.uniform(0, ceiling) * 0.5


class RetryHandler:
    """Retries one RPC while it fails with transient transport errors"""

    def __init__(self,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 logger: Optional[Any] = None):
        """
        Initialize retry handler

        Args:
            backoff: Backoff policy (creates default if not provided)
            classifier: Error classifier (creates default if not provided)
            logger: structlog-compatible logger for retry notices
        """
        self.backoff = backoff or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

    def execute_with_retry(self,
                           ctx: Context,
                           func: Callable,
                           *args,
                           rpc_name: str = "rpc",
                           on_retry: Optional[Callable[[int, Exception], None]] = None,
                           **kwargs) -> Any:
        """
        Execute an RPC, retrying transient errors until the context ends

        There is no attempt ceiling: the context deadline bounds the retries.

        Args:
            ctx: Ambient context
            func: RPC callable, invoked as func(*args, **kwargs)
            rpc_name: Name used in log events
            on_retry: Optional callback called before each retry
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            RPC result

        Raises:
            Canceled/DeadlineExceeded: If the context ends first
            Exception: The underlying error if it is not transient
        """
        attempt = 0

        while True:
            ctx.check()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                ctx_err = ctx.err()
                if ctx_err is not None:
                    raise ctx_err from e

                if not self.classifier.is_transient(e):
                    raise

                delay = self.backoff.get_delay(attempt)

                # Call retry callback if provided
                if on_retry:
                    on_retry(attempt, e)

                self.logger.info(
                    "rpc_transient_error_retrying",
                    rpc=rpc_name,
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 4),
                    error=str(e)
                )

                if not ctx.wait(delay):
                    raise ctx.err() from e
                attempt += 1
