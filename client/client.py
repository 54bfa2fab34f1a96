"""
Database Client - Entry point for queries and transactions

Usage:
    from client import Client, Statement

    with Client("projects/p/instances/i/databases/d") as db:
        with db.single().query(Statement("SELECT 1")) as rows:
            for row in rows:
                ...

        def transfer(tx):
            tx.update("UPDATE Accounts SET Balance = Balance - 10 WHERE AccountId = 1")
            tx.update("UPDATE Accounts SET Balance = Balance + 10 WHERE AccountId = 2")

        result = db.read_write_transaction(transfer)
"""

import re
from typing import Any, Callable, Dict, List, Optional

import structlog

from execution.context import Context, resolve_context
from execution.executor import CommitResult, TransactionRunner
from execution.retry_handler import RetryHandler
from execution.statement import Mutation
from execution.transaction import ReadOnlyTransaction, ReadWriteTransaction
from infrastructure.endpoint_resolver import Endpoint, EndpointResolver
from infrastructure.rpc_client import RestDataPlaneClient, RestInstanceAdminClient
from infrastructure.session_pool import SessionPool

from .config import ClientConfig

logger = structlog.get_logger(__name__)

DATABASE_NAME_PATTERN = re.compile(
    r"^projects/(?P<project>[^/]+)/instances/(?P<instance>[^/]+)/databases/(?P<database>[^/]+)$"
)


def valid_database_name(database: str) -> None:
    """
    Validate a database resource name

    Raises:
        ValueError: If the name is not projects/<p>/instances/<i>/databases/<d>
    """
    if not DATABASE_NAME_PATTERN.match(database or ""):
        raise ValueError(
            f"database name {database!r} should conform to pattern {DATABASE_NAME_PATTERN.pattern!r}"
        )


def get_instance_name(database: str) -> str:
    """Derive projects/<p>/instances/<i> from a database name"""
    match = DATABASE_NAME_PATTERN.match(database or "")
    if not match:
        raise ValueError(f"Failed to retrieve instance name from {database!r}")
    return f"projects/{match.group('project')}/instances/{match.group('instance')}"


class Client:
    """
    Client for one database

    Safe for concurrent use from many threads. The data-plane endpoint is
    fixed at construction.
    """

    def __init__(self,
                 database: str,
                 config: Optional[ClientConfig] = None,
                 ctx: Optional[Context] = None,
                 admin_client: Optional[Any] = None,
                 transport_factory: Optional[Callable[[Endpoint], Any]] = None,
                 headers_provider: Optional[Callable[[], Dict[str, str]]] = None):
        """
        Initialize client

        Args:
            database: projects/<p>/instances/<i>/databases/<d>
            config: Client settings (read from the environment if omitted)
            ctx: Context bounding construction (endpoint discovery, first RPCs)
            admin_client: Instance admin client used for endpoint discovery
            transport_factory: Builds the data-plane client for an endpoint
            headers_provider: Auth headers for the default REST clients

        Raises:
            ValueError: If the database name is invalid
            StatusError: If endpoint discovery fails with a fatal error
        """
        valid_database_name(database)
        ctx = resolve_context(ctx)

        self.database = database
        self.instance_name = get_instance_name(database)
        self.config = config if config is not None else ClientConfig.from_env()
        self.logger = self.config.logger if self.config.logger is not None else logger

        self._backoff = self.config.backoff()
        self._classifier = self.config.classifier()

        if admin_client is None:
            admin_client = RestInstanceAdminClient(
                self.config.default_endpoint,
                headers_provider=headers_provider
            )
        resolver = EndpointResolver(
            admin_client,
            default_endpoint=self.config.default_endpoint,
            enabled=self.config.enable_resource_based_routing,
            backoff=self._backoff,
            classifier=self._classifier,
            discovery_timeout=self.config.endpoint_discovery_timeout,
            logger=self.logger
        )
        self.endpoint = resolver.resolve(ctx, self.instance_name)

        if transport_factory is None:
            def transport_factory(endpoint: Endpoint) -> RestDataPlaneClient:
                return RestDataPlaneClient(endpoint.address, headers_provider=headers_provider)
        self._api = transport_factory(self.endpoint)

        self._sessions = SessionPool(
            self._api,
            database,
            retry_handler=RetryHandler(self._backoff, self._classifier, self.logger),
            max_idle_sessions=self.config.max_idle_sessions,
            logger=self.logger
        )
        self._runner = TransactionRunner(
            self._sessions,
            self._api,
            backoff=self._backoff,
            classifier=self._classifier,
            inline_begin=self.config.inline_begin,
            max_buffered_rows=self.config.max_buffered_rows,
            logger=self.logger
        )

        self.logger.info(
            "client_initialized",
            database=database,
            endpoint=self.endpoint.address,
            discovered=self.endpoint.discovered
        )

    def single(self) -> ReadOnlyTransaction:
        """Single-use read-only transaction for exactly one query"""
        return self._read_only(single_use=True)

    def read_only_transaction(self) -> ReadOnlyTransaction:
        """Multi-use read-only transaction; close() it when done"""
        return self._read_only(single_use=False)

    def read_write_transaction(self,
                               fn: Callable[[ReadWriteTransaction], Any],
                               ctx: Optional[Context] = None) -> CommitResult:
        """
        Run `fn` in a read/write transaction, retrying it on abort

        `fn` may run several times. It must not keep side effects of an
        attempt that later aborts.

        Args:
            fn: Transaction body receiving the live transaction
            ctx: Context bounding the whole transaction including retries

        Returns:
            CommitResult with the commit timestamp and the body's return value
        """
        return self._runner.run(resolve_context(ctx), fn)

    def apply(self,
              mutations: List[Mutation],
              ctx: Optional[Context] = None,
              at_least_once: bool = False) -> CommitResult:
        """
        Apply mutations atomically

        Args:
            mutations: Mutations to apply
            ctx: Context bounding the call
            at_least_once: Commit without BeginTransaction; a retried commit
                may apply the mutations more than once

        Returns:
            CommitResult with the commit timestamp
        """
        ctx = resolve_context(ctx)
        if at_least_once:
            return self._runner.run_apply(ctx, mutations)
        return self._runner.run(ctx, lambda tx: tx.buffer_write(mutations))

    def close(self) -> None:
        """Delete pooled sessions"""
        self._sessions.close()
        self.logger.info("client_closed", database=self.database)

    def __enter__(self) -> 'Client':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _read_only(self, single_use: bool) -> ReadOnlyTransaction:
        return ReadOnlyTransaction(
            self._sessions,
            self._api,
            single_use=single_use,
            backoff=self._backoff,
            classifier=self._classifier,
            max_buffered_rows=self.config.max_buffered_rows,
            logger=self.logger
        )
