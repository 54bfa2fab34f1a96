"""
Error Classifier - Maps arbitrary (possibly wrapped) errors to retry decisions

Every error raised inside the client passes through ErrorClassifier.classify()
exactly once at the point where a retry-or-propagate decision is made. The
classifier only inspects errors; callers always re-raise the original object.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

import grpc


class StatusError(Exception):
    """Status-coded RPC error"""

    code = grpc.StatusCode.UNKNOWN

    def __init__(self,
                 message: str = "",
                 code: Optional[grpc.StatusCode] = None,
                 retry_delay: Optional[float] = None):
        """
        Initialize status error

        Args:
            message: Server or client supplied error message
            code: Canonical status code (defaults to the class code)
            retry_delay: Server-suggested delay in seconds before retrying
        """
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.retry_delay = retry_delay

    def __str__(self):
        return f"{self.code.name}: {self.message}"

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code.name}, message={self.message!r})"


class Canceled(StatusError):
    """Raised when the ambient context was cancelled"""
    code = grpc.StatusCode.CANCELLED


class DeadlineExceeded(StatusError):
    """Raised when the ambient context deadline expired"""
    code = grpc.StatusCode.DEADLINE_EXCEEDED


class ErrorKind(Enum):
    """Error taxonomy driving retry decisions"""
    TRANSPORT_TRANSIENT = "transport_transient"  # Retry the single RPC/stream
    TRANSACTION_ABORT = "transaction_abort"      # Retry the whole attempt
    FATAL = "fatal"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELED = "canceled"


@dataclass(frozen=True)
class ClassifiedError:
    """Classification of one error (derived, never persisted)"""
    code: grpc.StatusCode
    kind: ErrorKind
    cause: Optional[BaseException]  # Unwrapped status-coded error, if any

    @property
    def is_abort(self) -> bool:
        return self.kind is ErrorKind.TRANSACTION_ABORT

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSPORT_TRANSIENT

    @property
    def retry_delay(self) -> Optional[float]:
        return getattr(self.cause, "retry_delay", None)


# INTERNAL errors carrying these messages are stream resets or proxy
# handshake failures, not server-side faults.
DEFAULT_TRANSIENT_INTERNAL_PATTERNS: Tuple[str, ...] = (
    "stream terminated by RST_STREAM",
    "HTTP/2 error code: INTERNAL_ERROR",
    "Connection closed with unknown cause",
    "Received unexpected EOS on DATA frame from server",
)


def underlying_cause(error: BaseException) -> Optional[BaseException]:
    """
    Return the error wrapped by `error`, if any

    Uses explicit chaining (`raise ... from`) first, then a `cause`
    attribute holding an exception.
    """
    if error.__cause__ is not None:
        return error.__cause__
    cause = getattr(error, "cause", None)
    if isinstance(cause, BaseException):
        return cause
    return None


def find_status_error(error: BaseException) -> Optional[BaseException]:
    """
    Walk the cause chain until a status-coded error is found

    Args:
        error: Error to inspect

    Returns:
        The first StatusError or grpc.RpcError in the chain, else None
    """
    seen = set()
    current: Optional[BaseException] = error

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, StatusError):
            return current
        if isinstance(current, grpc.RpcError) and callable(getattr(current, "code", None)):
            return current
        current = underlying_cause(current)

    return None


def _status_of(error: BaseException) -> Tuple[grpc.StatusCode, str]:
    if isinstance(error, StatusError):
        return error.code, error.message
    # grpc.RpcError raised by a real channel is also a grpc.Call
    details = getattr(error, "details", None)
    message = details() if callable(details) else str(error)
    return error.code(), message or ""


def status_code(error: BaseException) -> grpc.StatusCode:
    """Status code of `error` after unwrapping; UNKNOWN if none is found"""
    found = find_status_error(error)
    if found is None:
        return grpc.StatusCode.UNKNOWN
    return _status_of(found)[0]


def is_session_not_found(error: Optional[BaseException]) -> bool:
    """True if the server no longer knows the session `error` was raised for"""
    if error is None:
        return False
    found = find_status_error(error)
    if found is None:
        return False
    code, message = _status_of(found)
    return code == grpc.StatusCode.NOT_FOUND and "Session not found" in message


class ErrorClassifier:
    """Classifies errors into the retry taxonomy"""

    def __init__(self, transient_internal_patterns: Optional[Iterable[str]] = None):
        """
        Initialize classifier

        Args:
            transient_internal_patterns: Message substrings marking an
                INTERNAL error as transient (defaults to known stream resets)
        """
        if transient_internal_patterns is None:
            transient_internal_patterns = DEFAULT_TRANSIENT_INTERNAL_PATTERNS
        self.transient_internal_patterns = tuple(transient_internal_patterns)

    def classify(self, error: BaseException) -> ClassifiedError:
        """
        Classify an error

        Args:
            error: Error to classify (may be wrapped arbitrarily deep)

        Returns:
            ClassifiedError describing how the error must be handled
        """
        found = find_status_error(error)
        if found is None:
            return ClassifiedError(code=grpc.StatusCode.UNKNOWN, kind=ErrorKind.FATAL, cause=None)

        code, message = _status_of(found)

        if code == grpc.StatusCode.ABORTED:
            kind = ErrorKind.TRANSACTION_ABORT
        elif code == grpc.StatusCode.UNAVAILABLE:
            kind = ErrorKind.TRANSPORT_TRANSIENT
        elif code == grpc.StatusCode.INTERNAL and self._is_benign_internal(message):
            kind = ErrorKind.TRANSPORT_TRANSIENT
        elif code == grpc.StatusCode.DEADLINE_EXCEEDED:
            kind = ErrorKind.DEADLINE_EXCEEDED
        elif code == grpc.StatusCode.CANCELLED:
            kind = ErrorKind.CANCELED
        else:
            kind = ErrorKind.FATAL

        return ClassifiedError(code=code, kind=kind, cause=found)

    def is_transient(self, error: BaseException) -> bool:
        return self.classify(error).is_transient

    def is_abort(self, error: BaseException) -> bool:
        return self.classify(error).is_abort

    def _is_benign_internal(self, message: str) -> bool:
        return any(pattern in message for pattern in self.transient_internal_patterns)


_default_classifier = ErrorClassifier()


def classify(error: BaseException) -> ClassifiedError:
    """Classify with the default transient allow-list"""
    return _default_classifier.classify(error)
