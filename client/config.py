"""
Client Configuration - Validated settings for a database client

Settings are read once at construction; nothing is re-read from the
environment afterwards.
"""

import os
from pathlib import Path
from typing import Any, Optional, Tuple, Union

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from execution.errors import DEFAULT_TRANSIENT_INTERNAL_PATTERNS, ErrorClassifier
from execution.retry_handler import BackoffPolicy
from infrastructure.endpoint_resolver import DEFAULT_ENDPOINT

ROUTING_ENV_VAR = "GOOGLE_CLOUD_SPANNER_ENABLE_RESOURCE_BASED_ROUTING"
ENDPOINT_ENV_VAR = "SPANNER_ENDPOINT"


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1")


class ClientConfig(BaseModel):
    """Client settings"""

    enable_resource_based_routing: bool = Field(
        default=False,
        description="Discover an instance-specific endpoint before the first RPC"
    )
    default_endpoint: str = Field(
        default=DEFAULT_ENDPOINT,
        description="Endpoint used when routing is off or discovery falls back"
    )
    endpoint_discovery_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds spent retrying GetInstance before falling back"
    )
    inline_begin: bool = Field(
        default=True,
        description="Begin read/write transactions on their first statement"
    )
    retry_initial_delay: float = Field(default=0.02, gt=0)
    retry_max_delay: float = Field(default=32.0, gt=0)
    retry_multiplier: float = Field(default=1.3, ge=1)
    transient_internal_patterns: Tuple[str, ...] = Field(
        default=DEFAULT_TRANSIENT_INTERNAL_PATTERNS,
        description="INTERNAL error messages treated as transient stream resets"
    )
    max_buffered_rows: int = Field(default=1024, gt=0)
    max_idle_sessions: int = Field(default=100, ge=0)
    logger: Optional[Any] = Field(
        default=None,
        description="structlog-compatible logger for fallback and retry events"
    )

    @model_validator(mode="after")
    def _check_delays(self) -> 'ClientConfig':
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError("retry_max_delay must be >= retry_initial_delay")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[Union[str, Path]] = None, **overrides: Any) -> 'ClientConfig':
        """
        Build configuration from environment variables

        Args:
            env_file: Optional dotenv file loaded first (existing variables win)
            **overrides: Explicit settings taking precedence over the environment

        Returns:
            Validated ClientConfig
        """
        if env_file is not None:
            load_dotenv(env_file)

        values = {
            "enable_resource_based_routing": _env_flag(os.getenv(ROUTING_ENV_VAR)),
        }
        endpoint = os.getenv(ENDPOINT_ENV_VAR)
        if endpoint:
            values["default_endpoint"] = endpoint

        values.update(overrides)
        return cls(**values)

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.retry_initial_delay,
            max_delay=self.retry_max_delay,
            multiplier=self.retry_multiplier
        )

    def classifier(self) -> ErrorClassifier:
        return ErrorClassifier(self.transient_internal_patterns)
