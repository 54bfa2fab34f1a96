"""
Client Package - Resilient transactional database client
"""

from execution.context import Context
from execution.errors import Canceled, DeadlineExceeded, StatusError
from execution.executor import CommitResult
from execution.statement import Mutation, Statement

from .client import Client, get_instance_name, valid_database_name
from .config import ClientConfig

__all__ = [
    'Client',
    'ClientConfig',
    'CommitResult',
    'Context',
    'Statement',
    'Mutation',
    'StatusError',
    'Canceled',
    'DeadlineExceeded',
    'valid_database_name',
    'get_instance_name',
]
