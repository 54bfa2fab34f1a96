"""
Transactions - Read-only and read/write transaction handles
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from .context import Context, resolve_context
from .errors import ErrorClassifier, is_session_not_found
from .retry_handler import BackoffPolicy, RetryHandler
from .statement import Mutation, Statement
from .stream import PartialResult, ResumableStreamReader
from .tracker import Attempt

logger = structlog.get_logger(__name__)

SINGLE_USE_READ_ONLY = {"singleUse": {"readOnly": {"strong": True}}}
BEGIN_READ_WRITE = {"begin": {"readWrite": {}}}


def _as_statement(statement: Any) -> Statement:
    if isinstance(statement, Statement):
        return statement
    if isinstance(statement, str):
        return Statement(statement)
    raise TypeError(f"Expected Statement or str, got {type(statement).__name__}")


class ReadOnlyTransaction:
    """
    Read-only transaction over a leased session

    A single-use transaction runs exactly one query and releases its session
    when that query's reader stops. A multi-use transaction begins lazily on
    its first query and holds its session until close().
    """

    def __init__(self,
                 sessions: Any,
                 api: Any,
                 single_use: bool = True,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 max_buffered_rows: int = 1024,
                 logger: Optional[Any] = None):
        """
        Initialize read-only transaction

        Args:
            sessions: Session provider (acquire/release)
            api: Data-plane RPC client
            single_use: Run one query without BeginTransaction
            backoff: Backoff policy shared with retries
            classifier: Error classifier
            max_buffered_rows: Hold-back buffer of each stream reader
            logger: structlog-compatible logger
        """
        self._sessions = sessions
        self._api = api
        self.single_use = single_use
        self._backoff = backoff or BackoffPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._max_buffered_rows = max_buffered_rows
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._retry = RetryHandler(self._backoff, self._classifier, self._logger)

        self._lock = threading.Lock()
        self._begin_lock = threading.Lock()
        self._session = None
        self._session_lost = False
        self._transaction_id: Optional[bytes] = None
        self._used = False
        self._closed = False

    def query(self, statement: Any, ctx: Optional[Context] = None) -> ResumableStreamReader:
        """
        Execute a query

        Args:
            statement: Statement or SQL string
            ctx: Ambient context (background if omitted)

        Returns:
            Row iterator; stop() it (or use it as a context manager) when done
        """
        ctx = resolve_context(ctx)
        statement = _as_statement(statement)

        with self._lock:
            if self._closed:
                raise ValueError("Transaction is closed")
            if self.single_use and self._used:
                raise ValueError("Single-use transaction can only run one query")
            self._used = True

        def call(resume_token: Optional[bytes]):
            session = self._ensure_session(ctx)
            selector = SINGLE_USE_READ_ONLY if self.single_use else {"id": self._ensure_begun(ctx, session)}
            return self._api.execute_streaming_sql(
                ctx,
                session.name,
                statement,
                transaction=selector,
                resume_token=resume_token
            )

        def on_stop():
            if is_session_not_found(reader.error):
                with self._lock:
                    self._session_lost = True
            if self.single_use:
                self.close()

        reader = ResumableStreamReader(
            ctx,
            call,
            backoff=self._backoff,
            classifier=self._classifier,
            max_buffered_rows=self._max_buffered_rows,
            on_stop=on_stop,
            logger=self._logger
        )
        return reader

    def close(self) -> None:
        """Release the session; closing an unused transaction is a no-op"""
        with self._lock:
            self._closed = True
            session, self._session = self._session, None
            discard = self._session_lost
        if session is not None:
            self._sessions.release(session, discard=discard)

    def __enter__(self) -> 'ReadOnlyTransaction':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _ensure_session(self, ctx: Context):
        with self._lock:
            if self._closed:
                raise ValueError("Transaction is closed")
            if self._session is not None:
                return self._session

        session = self._sessions.acquire(ctx)

        with self._lock:
            if not self._closed and self._session is None:
                self._session = session
                return session
            current, closed = self._session, self._closed

        # Lost the race against close() or a concurrent query
        self._sessions.release(session)
        if closed:
            raise ValueError("Transaction is closed")
        return current

    def _ensure_begun(self, ctx: Context, session: Any) -> bytes:
        # Serializes begins; close() does not take it
        with self._begin_lock:
            with self._lock:
                if self._transaction_id is not None:
                    return self._transaction_id

            transaction_id = self._retry.execute_with_retry(
                ctx,
                self._api.begin_transaction,
                ctx,
                session.name,
                read_only=True,
                rpc_name="begin_transaction"
            )

            with self._lock:
                self._transaction_id = transaction_id
            return transaction_id


class ReadWriteTransaction:
    """
    Live handle passed to a read/write transaction body

    Bound to one Attempt. The transaction is begun lazily: either by the
    first statement (inline begin) or by an explicit BeginTransaction.
    """

    def __init__(self,
                 ctx: Context,
                 session: Any,
                 api: Any,
                 attempt: Attempt,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 inline_begin: bool = True,
                 max_buffered_rows: int = 1024,
                 logger: Optional[Any] = None):
        self.ctx = ctx
        self._session = session
        self._api = api
        self.attempt = attempt
        self._backoff = backoff or BackoffPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._inline_begin = inline_begin
        self._max_buffered_rows = max_buffered_rows
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._retry = RetryHandler(self._backoff, self._classifier, self._logger)

        self._lock = threading.Lock()
        self._begin_event: Optional[threading.Event] = None  # Set while an inline begin is in flight
        self._readers: List[ResumableStreamReader] = []
        self._seqno = 0

    @property
    def transaction_id(self) -> Optional[bytes]:
        return self.attempt.transaction_id

    def begin(self) -> bytes:
        """
        Begin the transaction explicitly

        Transient errors retry BeginTransaction alone; they never start a
        new attempt.
        """
        with self._lock:
            if self.attempt.transaction_id is not None:
                return self.attempt.transaction_id

        transaction_id = self._retry.execute_with_retry(
            self.ctx,
            self._api.begin_transaction,
            self.ctx,
            self._session.name,
            read_only=False,
            rpc_name="begin_transaction"
        )

        with self._lock:
            if self.attempt.transaction_id is None:
                self.attempt.transaction_id = transaction_id
            return self.attempt.transaction_id

    def query(self, statement: Any) -> ResumableStreamReader:
        """
        Execute a query inside the transaction

        Args:
            statement: Statement or SQL string

        Returns:
            Row iterator over the result set
        """
        return self._execute(_as_statement(statement))

    def update(self, statement: Any) -> int:
        """
        Execute a DML statement

        Returns:
            Exact number of rows modified
        """
        reader = self._execute(_as_statement(statement))
        with reader:
            for _ in reader:
                pass
        stats = reader.stats or {}
        return int(stats.get("rowCountExact", 0))

    def buffer_write(self, mutations: List[Mutation]) -> None:
        """Buffer mutations; they are applied atomically by Commit"""
        self.attempt.buffer(list(mutations))

    def commit(self) -> datetime:
        """
        Commit the attempt's buffered mutations

        Returns:
            Commit timestamp
        """
        self._check_active()
        # Statements still streaming would hold an inline begin open
        self.close()
        transaction_id = self.begin()

        return self._retry.execute_with_retry(
            self.ctx,
            self._api.commit,
            self.ctx,
            self._session.name,
            transaction_id=transaction_id,
            mutations=list(self.attempt.mutations),
            rpc_name="commit"
        )

    def rollback(self) -> None:
        """Best-effort rollback; failures are only logged"""
        transaction_id = self.attempt.transaction_id
        if transaction_id is None:
            return
        try:
            self._api.rollback(self.ctx, self._session.name, transaction_id)
        except Exception as e:
            self._logger.warning(
                "transaction_rollback_failed",
                attempt=self.attempt.index,
                error=str(e)
            )

    def close(self) -> None:
        """Stop every reader opened by this attempt"""
        with self._lock:
            readers, self._readers = self._readers, []
        for reader in readers:
            reader.stop()

    def _check_active(self) -> None:
        if not self.attempt.is_active:
            raise ValueError(
                f"Transaction attempt {self.attempt.index} is {self.attempt.state.value}"
            )

    def _execute(self, statement: Statement) -> ResumableStreamReader:
        self._check_active()
        with self._lock:
            self._seqno += 1
            seqno = self._seqno

        owns_begin = [False]

        def call(resume_token: Optional[bytes]):
            self._check_active()
            selector = self._selector(owns_begin)
            return self._api.execute_streaming_sql(
                self.ctx,
                self._session.name,
                statement,
                transaction=selector,
                resume_token=resume_token,
                seqno=seqno
            )

        def on_partial_result(result: PartialResult) -> None:
            if result.transaction_id is not None:
                self._begun_inline(result.transaction_id)

        def on_stop() -> None:
            if owns_begin[0]:
                owns_begin[0] = False
                self._abandon_inline_begin()

        reader = ResumableStreamReader(
            self.ctx,
            call,
            backoff=self._backoff,
            classifier=self._classifier,
            max_buffered_rows=self._max_buffered_rows,
            on_partial_result=on_partial_result,
            on_stop=on_stop,
            logger=self._logger
        )
        with self._lock:
            self._readers.append(reader)
        return reader

    def _selector(self, owns_begin: List[bool]) -> Dict[str, Any]:
        """
        Transaction selector for the next statement RPC

        The first statement of an attempt carries the begin; statements
        issued while that begin is in flight wait for its transaction id.
        """
        while True:
            with self._lock:
                if self.attempt.transaction_id is not None:
                    return {"id": self.attempt.transaction_id}
                if owns_begin[0]:
                    # Re-issued before the id arrived: begin again
                    return BEGIN_READ_WRITE
                if not self._inline_begin:
                    event = None
                elif self._begin_event is None:
                    self._begin_event = threading.Event()
                    owns_begin[0] = True
                    return BEGIN_READ_WRITE
                else:
                    event = self._begin_event

            if event is None:
                return {"id": self.begin()}
            self._wait_for_begin(event)

    def _wait_for_begin(self, event: threading.Event) -> None:
        unregister = self.ctx.add_done_callback(event.set)
        try:
            event.wait()
        finally:
            unregister()
        self.ctx.check()

    def _begun_inline(self, transaction_id: bytes) -> None:
        with self._lock:
            if self.attempt.transaction_id is None:
                self.attempt.transaction_id = transaction_id
            event, self._begin_event = self._begin_event, None
        if event is not None:
            event.set()

    def _abandon_inline_begin(self) -> None:
        """The statement carrying the begin ended without a transaction id"""
        with self._lock:
            if self.attempt.transaction_id is not None:
                return
            event, self._begin_event = self._begin_event, None
        if event is not None:
            event.set()
