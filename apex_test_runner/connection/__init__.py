"""Authenticated access to the platform APIs."""

from apex_test_runner.connection.base import (
    Connection,
    InvalidSessionError,
    PlatformError,
)
from apex_test_runner.connection.client import PlatformConnection
from apex_test_runner.connection.config import ConnectionConfig

__all__ = [
    "Connection",
    "ConnectionConfig",
    "InvalidSessionError",
    "PlatformConnection",
    "PlatformError",
]
