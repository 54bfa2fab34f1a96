"""
Execution Context - Deadline and cancellation propagation for RPC calls

Every blocking operation in the client (RPC waits, stream reads, backoff
sleeps) observes a Context so that cancellation or deadline expiry unblocks
it immediately.
"""

import threading
import time
from typing import Callable, List, Optional, Tuple

from .errors import Canceled, DeadlineExceeded, StatusError


class Context:
    """
    Cancellation signal plus an optional absolute deadline

    Contexts form a tree: a child ends when its parent ends, and its
    deadline is never later than the parent's.
    """

    def __init__(self,
                 parent: Optional['Context'] = None,
                 deadline: Optional[float] = None):
        """
        Initialize context

        Args:
            parent: Parent context (None for a root context)
            deadline: Absolute deadline on the time.monotonic() clock
        """
        self._parent = parent
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._err: Optional[StatusError] = None
        self._callbacks: List[Callable[[], None]] = []
        self._children: List['Context'] = []
        self._timer: Optional[threading.Timer] = None

        if parent is not None and parent._deadline is not None:
            deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
        self._deadline = deadline

        if parent is not None:
            parent._attach(self)

        if self._deadline is not None and not self._done.is_set():
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                self._finish(DeadlineExceeded("context deadline exceeded"))
            else:
                self._timer = threading.Timer(
                    remaining,
                    self._finish,
                    args=(DeadlineExceeded("context deadline exceeded"),)
                )
                self._timer.daemon = True
                self._timer.start()

    @classmethod
    def background(cls) -> 'Context':
        """Root context that is never cancelled and has no deadline"""
        return cls()

    def with_timeout(self, seconds: float) -> 'Context':
        """Derive a child context that expires after `seconds`"""
        return Context(parent=self, deadline=time.monotonic() + seconds)

    def with_deadline(self, deadline: float) -> 'Context':
        """Derive a child context expiring at a time.monotonic() deadline"""
        return Context(parent=self, deadline=deadline)

    def with_cancel(self) -> Tuple['Context', Callable[[], None]]:
        """
        Derive a cancellable child context

        Returns:
            (child context, cancel function)
        """
        child = Context(parent=self)
        return child, child.cancel

    def cancel(self) -> None:
        """Cancel this context and all of its children"""
        self._finish(Canceled("context canceled"))

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None if there is no deadline"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def done(self) -> bool:
        if not self._done.is_set() and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self._finish(DeadlineExceeded("context deadline exceeded"))
        return self._done.is_set()

    def err(self) -> Optional[StatusError]:
        """Canceled or DeadlineExceeded once the context has ended, else None"""
        if self.done():
            # Fresh instance per call; raising rewrites __cause__ and __traceback__
            return type(self._err)(self._err.message)
        return None

    def check(self) -> None:
        """Raise the context error if the context has ended"""
        err = self.err()
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """
        Sleep for `seconds` unless the context ends first

        Args:
            seconds: Delay to wait

        Returns:
            True if the full delay elapsed, False if the context ended
        """
        if seconds <= 0:
            return not self.done()
        self._done.wait(seconds)
        return not self.done()

    def add_done_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run `callback` once when the context ends

        The callback runs immediately if the context has already ended.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def _attach(self, child: 'Context') -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.append(child)
                return
            err = self._err
        child._finish(err)

    def _detach(self, child: 'Context') -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def _finish(self, err: StatusError) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._err = err
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
            children, self._children = self._children, []
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()
        if self._parent is not None:
            self._parent._detach(self)
        for child in children:
            child._finish(err)
        for callback in callbacks:
            callback()


def resolve_context(ctx: Optional[Context]) -> Context:
    """Return ctx, or a background context when none was supplied"""
    return ctx if ctx is not None else Context.background()
