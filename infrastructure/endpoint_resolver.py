"""
Endpoint Resolver - Resource-based routing for data-plane RPCs

When resource-based routing is enabled, the instance metadata is read once
before the first data-plane RPC and the instance-specific endpoint replaces
the global default. Discovery failures that do not indicate a broken
configuration fall back to the default endpoint.
"""

from dataclasses import dataclass
from typing import Any, Optional

import grpc
import structlog

from execution.context import Context
from execution.errors import ErrorClassifier
from execution.retry_handler import BackoffPolicy, RetryHandler

logger = structlog.get_logger(__name__)

DEFAULT_ENDPOINT = "spanner.googleapis.com:443"
ENDPOINT_URIS_FIELD = "endpointUris"


@dataclass(frozen=True)
class Endpoint:
    """Address used for every data-plane RPC of one client"""
    address: str
    discovered: bool = False


class EndpointResolver:
    """Resolves the data-plane endpoint of an instance"""

    def __init__(self,
                 admin_client: Any,
                 default_endpoint: str = DEFAULT_ENDPOINT,
                 enabled: bool = False,
                 backoff: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 discovery_timeout: float = 30.0,
                 logger: Optional[Any] = None):
        """
        Initialize endpoint resolver

        Args:
            admin_client: Instance admin client exposing get_instance()
            default_endpoint: Endpoint used when discovery is off or fails
            enabled: Resource-based routing switch
            backoff: Backoff between GetInstance retries
            classifier: Error classifier
            discovery_timeout: Upper bound in seconds for discovery retries
            logger: structlog-compatible logger for fallback warnings
        """
        self.admin_client = admin_client
        self.default_endpoint = Endpoint(default_endpoint)
        self.enabled = enabled
        self.classifier = classifier or ErrorClassifier()
        self.discovery_timeout = discovery_timeout
        self.logger = logger if logger is not None else structlog.get_logger(__name__)
        self.retry_handler = RetryHandler(backoff, self.classifier, self.logger)

    def resolve(self, ctx: Context, instance_name: str) -> Endpoint:
        """
        Resolve the endpoint for an instance

        Args:
            ctx: Caller context; its cancellation or deadline is raised
            instance_name: projects/<p>/instances/<i>

        Returns:
            First discovered endpoint, or the default endpoint

        Raises:
            Canceled/DeadlineExceeded: If the caller context ends
            StatusError: Any fatal discovery error other than PERMISSION_DENIED
        """
        if not self.enabled:
            return self.default_endpoint

        discovery_ctx = ctx.with_timeout(self.discovery_timeout)
        try:
            instance = self.retry_handler.execute_with_retry(
                discovery_ctx,
                self.admin_client.get_instance,
                discovery_ctx,
                instance_name,
                field_mask=[ENDPOINT_URIS_FIELD],
                rpc_name="get_instance"
            )
        except Exception as e:
            ctx_err = ctx.err()
            if ctx_err is not None:
                raise ctx_err from e

            classified = self.classifier.classify(e)
            if classified.code == grpc.StatusCode.PERMISSION_DENIED:
                self.logger.warning(
                    "endpoint_discovery_permission_denied",
                    instance=instance_name,
                    default_endpoint=self.default_endpoint.address,
                    error=str(e)
                )
                return self.default_endpoint

            if discovery_ctx.err() is not None:
                self.logger.warning(
                    "endpoint_discovery_timed_out",
                    instance=instance_name,
                    timeout_seconds=self.discovery_timeout,
                    default_endpoint=self.default_endpoint.address,
                    error=str(e)
                )
                return self.default_endpoint

            raise
        finally:
            discovery_ctx.cancel()

        endpoint_uris = (instance or {}).get(ENDPOINT_URIS_FIELD) or []
        if not endpoint_uris:
            self.logger.debug("endpoint_discovery_no_endpoints", instance=instance_name)
            return self.default_endpoint

        self.logger.info(
            "endpoint_discovered",
            instance=instance_name,
            endpoint=endpoint_uris[0]
        )
        return Endpoint(endpoint_uris[0], discovered=True)
