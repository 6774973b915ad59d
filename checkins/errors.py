"""Exceptions raised by the check-in engine."""
from __future__ import annotations


class CheckinError(Exception):
    """Base exception for check-in operations."""


class ConfigurationError(CheckinError):
    """Required configuration is missing or unusable (fatal at startup)."""


class StoreTimeoutError(CheckinError):
    """A store call did not complete within the configured timeout."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"store {operation} timed out after {timeout:g}s")
