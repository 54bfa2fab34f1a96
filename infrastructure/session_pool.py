"""
Session Pool - Thread-safe pool of server-side sessions

Every transaction and single read leases one session for its whole
duration. Released sessions are kept idle for reuse, up to a limit;
close() deletes everything the pool still holds.
"""

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Deque, Iterator, Optional, Set

import structlog

from execution.context import Context
from execution.errors import is_session_not_found
from execution.retry_handler import RetryHandler

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Session:
    """Handle to a server-side session"""
    name: str


class SessionPool:
    """
    Lease pool of sessions for one database

    Usage:
        with pool.lease(ctx) as session:
            api.execute_streaming_sql(ctx, session.name, ...)
    """

    def __init__(self,
                 api: Any,
                 database: str,
                 retry_handler: Optional[RetryHandler] = None,
                 max_idle_sessions: int = 100,
                 logger: Optional[Any] = None):
        """
        Initialize session pool

        Args:
            api: Data-plane RPC client (create_session/delete_session)
            database: Database resource name
            retry_handler: Retries CreateSession on transient errors
            max_idle_sessions: Idle sessions kept for reuse; extra ones are deleted
            logger: structlog-compatible logger
        """
        self.api = api
        self.database = database
        self.retry_handler = retry_handler or RetryHandler()
        self.max_idle_sessions = max_idle_sessions
        self.logger = logger if logger is not None else structlog.get_logger(__name__)

        self._lock = threading.Lock()
        self._idle: Deque[Session] = deque()
        self._in_use: Set[Session] = set()
        self._closed = False

    def acquire(self, ctx: Context) -> Session:
        """
        Lease a session, creating one if none is idle

        Raises:
            ValueError: If the pool is closed
        """
        with self._lock:
            if self._closed:
                raise ValueError("Session pool is closed")
            if self._idle:
                session = self._idle.popleft()
                self._in_use.add(session)
                return session

        name = self.retry_handler.execute_with_retry(
            ctx,
            self.api.create_session,
            ctx,
            self.database,
            rpc_name="create_session"
        )
        session = Session(name=name)

        with self._lock:
            closed = self._closed
            if not closed:
                self._in_use.add(session)

        if closed:
            self._delete(session)
            raise ValueError("Session pool is closed")

        self.logger.debug("session_created", session=session.name)
        return session

    def release(self, session: Session, discard: bool = False) -> None:
        """
        Return a leased session; releasing twice is a no-op

        Args:
            session: Leased session
            discard: The server no longer knows the session; drop it
                instead of pooling or deleting it
        """
        with self._lock:
            if session not in self._in_use:
                return
            self._in_use.discard(session)
            keep = not discard and not self._closed and len(self._idle) < self.max_idle_sessions
            if keep:
                self._idle.append(session)

        if discard:
            self.logger.info("session_discarded", session=session.name)
        elif not keep:
            self._delete(session)

    @contextmanager
    def lease(self, ctx: Context) -> Iterator[Session]:
        """Context manager that releases the session on every exit path"""
        session = self.acquire(ctx)
        discard = False
        try:
            yield session
        except Exception as e:
            discard = is_session_not_found(e)
            raise
        finally:
            self.release(session, discard=discard)

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def in_use_count(self) -> int:
        with self._lock:
            return len(self._in_use)

    def close(self) -> None:
        """Delete idle sessions; leased ones are deleted when released"""
        with self._lock:
            self._closed = True
            idle, self._idle = list(self._idle), deque()

        for session in idle:
            self._delete(session)

        self.logger.debug("session_pool_closed", deleted=len(idle))

    def _delete(self, session: Session) -> None:
        ctx = Context.background().with_timeout(30)
        try:
            self.api.delete_session(ctx, session.name)
        except Exception as e:
            self.logger.warning(
                "session_delete_failed",
                session=session.name,
                error=str(e)
            )
        finally:
            ctx.cancel()
