"""
Resumable Stream Reader - Row stream that survives transient RPC failures

A streaming query delivers PartialResult messages. Some of them carry a
resume token; re-issuing the query with that token continues the result
set right after the rows the token acknowledges. The reader hides stream
resets from the caller and guarantees that no row is surfaced twice and
none is lost.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, Iterator, List, Optional, Sequence

import structlog

from .context import Context
from .errors import ErrorClassifier
from .retry_handler import BackoffPolicy

logger = structlog.get_logger(__name__)


class StreamState(Enum):
    """Reader lifecycle states"""
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    RESUMING = "resuming"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PartialResult:
    """One message of a streaming query"""
    rows: List[Sequence[Any]] = field(default_factory=list)
    resume_token: Optional[bytes] = None
    transaction_id: Optional[bytes] = None  # Set when the statement began a transaction
    stats: Optional[Dict[str, Any]] = None  # Only on the last message


# Issues the streaming RPC, resuming after the given token (None = from start)
StreamingCall = Callable[[Optional[bytes]], Iterable[PartialResult]]


class ResumableStreamReader:
    """
    Iterator over the rows of one logical query

    Rows received after the latest resume token are held back until the next
    token (or end of stream) arrives, because the server re-sends them after a
    resume. When more than `max_buffered_rows` pile up without a token they are
    released early and counted; after a resume that many re-sent rows are
    dropped before delivery continues.

    Usage:
        with ResumableStreamReader(ctx, call) as rows:
            for row in rows:
                ...
    """

    def __init__(self,
                 ctx: Context,
                 call: StreamingCall,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 max_buffered_rows: int = 1024,
                 on_partial_result: Optional[Callable[[PartialResult], None]] = None,
                 on_stop: Optional[Callable[[], None]] = None,
                 logger: Optional[Any] = None):
        """
        Initialize stream reader

        Args:
            ctx: Ambient context; ending it fails the reader immediately
            call: Function issuing the streaming RPC for a resume token
            backoff: Backoff between resume attempts
            classifier: Error classifier deciding what can be resumed
            max_buffered_rows: Rows held back while waiting for a resume token
            on_partial_result: Hook observing every received message
            on_stop: Called exactly once when the reader releases its resources
            logger: structlog-compatible logger
        """
        self._ctx = ctx
        self._call = call
        self._backoff = backoff or BackoffPolicy()
        self._classifier = classifier or ErrorClassifier()
        self._max_buffered_rows = max_buffered_rows
        self._on_partial_result = on_partial_result
        self._on_stop = on_stop
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self.state = StreamState.NOT_STARTED
        self.stats: Optional[Dict[str, Any]] = None
        self.resume_count = 0

        self._lock = threading.Lock()
        self._response: Optional[Iterable[PartialResult]] = None
        self._stream: Optional[Iterator[PartialResult]] = None
        self._checkpoint: Optional[bytes] = None
        self._buffer: Deque[Sequence[Any]] = deque()   # Held back, not yet acknowledged
        self._ready: Deque[Sequence[Any]] = deque()    # Safe to surface
        self._released_since_checkpoint = 0
        self._skip = 0
        self._retries = 0
        self._error: Optional[BaseException] = None
        self._released = False
        self._unregister_ctx: Optional[Callable[[], None]] = None

    @property
    def checkpoint(self) -> Optional[bytes]:
        """Last acknowledged resume token"""
        return self._checkpoint

    @property
    def error(self) -> Optional[BaseException]:
        """Error that failed the reader, if any"""
        return self._error

    def start(self) -> None:
        """Issue the streaming RPC (NOT_STARTED -> ACTIVE)"""
        if self.state is not StreamState.NOT_STARTED:
            raise ValueError(f"Stream already started (state: {self.state.value})")

        self._unregister_ctx = self._ctx.add_done_callback(self._interrupt)
        self.state = StreamState.ACTIVE
        self._open()

    def __iter__(self) -> 'ResumableStreamReader':
        return self

    def __next__(self) -> Sequence[Any]:
        while True:
            if self.state is StreamState.FAILED:
                raise self._error

            if self._ready:
                return self._ready.popleft()

            if self.state is StreamState.DONE:
                raise StopIteration

            if self.state is StreamState.NOT_STARTED:
                self.start()
                continue

            self._pull()

    def next(self) -> Sequence[Any]:
        """Return the next row; raises StopIteration at end of stream"""
        return self.__next__()

    def stop(self) -> None:
        """Release the underlying stream; safe to call on every exit path"""
        if self.state not in (StreamState.DONE, StreamState.FAILED):
            self.state = StreamState.DONE
        self._ready.clear()
        self._buffer.clear()
        self._release()

    def __enter__(self) -> 'ResumableStreamReader':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def _open(self) -> None:
        """Issue (or re-issue) the RPC from the current checkpoint"""
        try:
            self._ctx.check()
            response = self._call(self._checkpoint)
            with self._lock:
                self._response = response
                self._stream = iter(response)
        except Exception as e:
            self._handle_error(e)

    def _pull(self) -> None:
        if self._stream is None:
            self._open()
            if self._stream is None:
                return
            self.state = StreamState.ACTIVE

        try:
            self._ctx.check()
            result = next(self._stream)
        except StopIteration:
            ctx_err = self._ctx.err()
            if ctx_err is not None:
                # Interrupted streams may end quietly
                self._fail(ctx_err)
            else:
                self._end_of_stream()
            return
        except Exception as e:
            self._handle_error(e)
            return

        self._accept(result)

    def _accept(self, result: PartialResult) -> None:
        if self._on_partial_result is not None:
            self._on_partial_result(result)
        if result.stats is not None:
            self.stats = result.stats

        for row in result.rows:
            if self._skip > 0:
                # Already released before the stream was resumed
                self._skip -= 1
                continue
            self._buffer.append(row)

        if result.resume_token:
            self._checkpoint = result.resume_token
            self._ready.extend(self._buffer)
            self._buffer.clear()
            # Rows still pending a skip lie beyond the new checkpoint
            self._released_since_checkpoint = self._skip
        elif len(self._buffer) > self._max_buffered_rows:
            self._released_since_checkpoint += len(self._buffer)
            self._ready.extend(self._buffer)
            self._buffer.clear()

        self._retries = 0

    def _end_of_stream(self) -> None:
        self._ready.extend(self._buffer)
        self._buffer.clear()
        self.state = StreamState.DONE
        self._release()

    def _handle_error(self, error: Exception) -> None:
        self._close_stream()

        ctx_err = self._ctx.err()
        if ctx_err is not None:
            ctx_err.__cause__ = error
            self._fail(ctx_err)
            return

        classified = self._classifier.classify(error)
        if not classified.is_transient:
            self._fail(error)
            return

        self.state = StreamState.RESUMING
        delay = self._backoff.get_delay(self._retries)
        self._retries += 1
        self.resume_count += 1

        self._logger.info(
            "stream_resuming",
            retry=self._retries,
            has_checkpoint=self._checkpoint is not None,
            skip_rows=self._released_since_checkpoint,
            delay_seconds=round(delay, 4),
            error=str(error)
        )

        if not self._ctx.wait(delay):
            ctx_err = self._ctx.err()
            ctx_err.__cause__ = error
            self._fail(ctx_err)
            return

        # The server re-sends everything after the checkpoint
        self._buffer.clear()
        self._skip = self._released_since_checkpoint

    def _fail(self, error: BaseException) -> None:
        self.state = StreamState.FAILED
        self._error = error
        self._ready.clear()
        self._buffer.clear()
        self._release()

    def _interrupt(self) -> None:
        """Context ended: abort any blocked read"""
        self._close_stream()

    def _close_stream(self) -> None:
        with self._lock:
            response, self._response = self._response, None
            self._stream = None
        if response is None:
            return

        closer = getattr(response, "cancel", None) or getattr(response, "close", None)
        if closer is None:
            return
        try:
            closer()
        except Exception as e:
            # A generator blocked in another thread refuses close()
            self._logger.debug("stream_close_failed", error=str(e))

    def _release(self) -> None:
        if self._released:
            return
        self._released = True

        if self._unregister_ctx is not None:
            self._unregister_ctx()
            self._unregister_ctx = None
        self._close_stream()

        if self._on_stop is not None:
            self._on_stop()
