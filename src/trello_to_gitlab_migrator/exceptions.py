"""
Custom exception classes for the Trello to GitLab migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigurationError(MigrationError):
    """Raised when required options are missing or invalid."""


class ApiError(MigrationError):
    """Raised when an API answers with a non-2xx status."""

    status_code: int
    body: str

    def __init__(self, status_code: int, reason: str, body: str) -> None:
        super().__init__(f"{status_code} {reason} {body}".strip())
        self.status_code = status_code
        self.body = body
