"""
Transaction Runner - Executes read/write transactions with retry on abort
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

import structlog

from .context import Context
from .errors import DeadlineExceeded, ErrorClassifier
from .retry_handler import BackoffPolicy, RetryHandler
from .statement import Mutation
from .tracker import Attempt, AttemptTracker
from .transaction import ReadWriteTransaction

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a committed transaction"""
    commit_timestamp: datetime
    attempts: int
    result: Any = None


class TransactionRunner:
    """
    Runs one logical read/write transaction through one or more attempts

    The body may run more than once. Buffered mutations and database writes
    of an aborted attempt are discarded by the server; any other side effect
    of the body must be safe to repeat.
    """

    def __init__(self,
                 sessions: Any,
                 api: Any,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 inline_begin: bool = True,
                 max_buffered_rows: int = 1024,
                 logger: Optional[Any] = None):
        """
        Initialize transaction runner

        Args:
            sessions: Session provider; one lease per logical transaction
            api: Data-plane RPC client
            backoff: Backoff policy between attempts (creates default if not provided)
            classifier: Error classifier (creates default if not provided)
            inline_begin: Begin on the first statement instead of BeginTransaction
            max_buffered_rows: Hold-back buffer of each stream reader
            logger: structlog-compatible logger
        """
        self.sessions = sessions
        self.api = api
        self.backoff = backoff or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.inline_begin = inline_begin
        self.max_buffered_rows = max_buffered_rows
        self.logger = logger if logger is not None else structlog.get_logger(__name__)
        self.retry_handler = RetryHandler(self.backoff, self.classifier, self.logger)

    def run(self, ctx: Context, body: Callable[[ReadWriteTransaction], Any]) -> CommitResult:
        """
        Execute a transaction body and commit it

        Args:
            ctx: Ambient context bounding every attempt and backoff sleep
            body: Function receiving the live transaction; its return value
                is passed back in CommitResult.result

        Returns:
            CommitResult with commit timestamp and attempt count

        Raises:
            Canceled/DeadlineExceeded: If the context ends before commit
            Exception: The body's (or Commit's) non-abort error, unchanged
        """
        ctx.check()
        tracker = AttemptTracker()

        with self.sessions.lease(ctx) as session:
            return self._retry_on_abort(
                ctx,
                tracker,
                lambda attempt: self._run_attempt(ctx, session, attempt, body)
            )

    def run_apply(self, ctx: Context, mutations: List[Mutation]) -> CommitResult:
        """
        Commit mutations in a single-use transaction, retrying on abort

        Skips BeginTransaction. A commit that fails after reaching the server
        may be retried, so the mutations can be applied more than once.
        """
        ctx.check()
        tracker = AttemptTracker()

        def commit_once(attempt: Attempt) -> Tuple[datetime, Any]:
            attempt.buffer(list(mutations))
            commit_timestamp = self.retry_handler.execute_with_retry(
                ctx,
                self.api.commit,
                ctx,
                session.name,
                transaction_id=None,
                mutations=list(attempt.mutations),
                rpc_name="commit"
            )
            return commit_timestamp, None

        with self.sessions.lease(ctx) as session:
            return self._retry_on_abort(ctx, tracker, commit_once)

    def _run_attempt(self,
                     ctx: Context,
                     session: Any,
                     attempt: Attempt,
                     body: Callable[[ReadWriteTransaction], Any]) -> Tuple[datetime, Any]:
        tx = ReadWriteTransaction(
            ctx,
            session,
            self.api,
            attempt,
            backoff=self.backoff,
            classifier=self.classifier,
            inline_begin=self.inline_begin,
            max_buffered_rows=self.max_buffered_rows,
            logger=self.logger
        )

        try:
            if not self.inline_begin:
                tx.begin()
            result = body(tx)
            commit_timestamp = tx.commit()
            return commit_timestamp, result
        except Exception as e:
            if ctx.err() is None and not self.classifier.is_abort(e):
                tx.rollback()
            raise
        finally:
            tx.close()

    def _retry_on_abort(self,
                        ctx: Context,
                        tracker: AttemptTracker,
                        attempt_fn: Callable[[Attempt], Tuple[datetime, Any]]) -> CommitResult:
        """
        Run attempts until one commits, an error is not an abort, or the
        context ends
        """
        while True:
            ctx.check()
            attempt = tracker.new_attempt()

            try:
                commit_timestamp, result = attempt_fn(attempt)
            except Exception as e:
                ctx_err = ctx.err()
                if ctx_err is not None:
                    attempt.fail(e)
                    raise ctx_err from e

                classified = self.classifier.classify(e)
                if not classified.is_abort:
                    attempt.fail(e)
                    self.logger.debug(
                        "transaction_failed",
                        attempt=attempt.index,
                        code=classified.code.name,
                        error=str(e)
                    )
                    raise

                attempt.discard(e)
                delay = classified.retry_delay
                if delay is None:
                    delay = self.backoff.get_delay(attempt.index)

                remaining = ctx.remaining()
                if remaining is not None and remaining <= delay:
                    raise DeadlineExceeded(
                        f"deadline expires before transaction retry "
                        f"(attempt {attempt.index + 1} aborted)"
                    ) from e

                self.logger.warning(
                    "transaction_aborted_retrying",
                    attempt=attempt.index + 1,
                    delay_seconds=round(delay, 4),
                    error=str(e)
                )

                if not ctx.wait(delay):
                    raise ctx.err() from e
                continue

            attempt.commit(commit_timestamp)
            self.logger.debug(
                "transaction_committed",
                attempts=tracker.count,
                commit_timestamp=commit_timestamp.isoformat() if commit_timestamp else None
            )
            return CommitResult(
                commit_timestamp=commit_timestamp,
                attempts=tracker.count,
                result=result
            )
