"""
Execution Package - Transaction execution engine with retry and stream resumption
"""

from .context import Context, resolve_context
from .errors import (
    StatusError,
    Canceled,
    DeadlineExceeded,
    ErrorKind,
    ClassifiedError,
    ErrorClassifier,
    DEFAULT_TRANSIENT_INTERNAL_PATTERNS,
    classify,
    status_code,
    is_session_not_found,
)
from .executor import TransactionRunner, CommitResult
from .retry_handler import BackoffPolicy, RetryHandler
from .statement import Statement, Mutation, MutationOp
from .stream import ResumableStreamReader, PartialResult, StreamState
from .tracker import Attempt, AttemptState, AttemptTracker
from .transaction import ReadOnlyTransaction, ReadWriteTransaction

__all__ = [
    'Context',
    'resolve_context',
    'StatusError',
    'Canceled',
    'DeadlineExceeded',
    'ErrorKind',
    'ClassifiedError',
    'ErrorClassifier',
    'DEFAULT_TRANSIENT_INTERNAL_PATTERNS',
    'classify',
    'status_code',
    'is_session_not_found',
    'TransactionRunner',
    'CommitResult',
    'BackoffPolicy',
    'RetryHandler',
    'Statement',
    'Mutation',
    'MutationOp',
    'ResumableStreamReader',
    'PartialResult',
    'StreamState',
    'Attempt',
    'AttemptState',
    'AttemptTracker',
    'ReadOnlyTransaction',
    'ReadWriteTransaction',
]
