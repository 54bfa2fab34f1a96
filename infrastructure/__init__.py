"""
Infrastructure Module
Provides the transport and connection components:
- REST clients for data-plane and instance-admin RPCs
- Session pool shared by all transactions of a client
- Endpoint resolver for resource-based routing
"""

from .endpoint_resolver import (
    DEFAULT_ENDPOINT,
    Endpoint,
    EndpointResolver
)
from .rpc_client import (
    PartialResultStream,
    RestDataPlaneClient,
    RestInstanceAdminClient,
    status_error_from_body
)
from .session_pool import (
    Session,
    SessionPool
)

__all__ = [
    # Endpoint resolution
    "DEFAULT_ENDPOINT",
    "Endpoint",
    "EndpointResolver",

    # REST transport
    "PartialResultStream",
    "RestDataPlaneClient",
    "RestInstanceAdminClient",
    "status_error_from_body",

    # Sessions
    "Session",
    "SessionPool",
]
