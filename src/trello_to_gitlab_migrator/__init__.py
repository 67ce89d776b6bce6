"""
Trello to GitLab Migration Tool

Migrates the cards of a Trello board to GitLab issues, with comments,
attachments, checklists and custom fields. Runs can be repeated against a
partially migrated project without duplicating issues.
"""

from __future__ import annotations

from .cli import main
from .exceptions import ApiError, ConfigurationError, MigrationError
from .migrator import TrelloToGitLabMigrator
from .options import ConverterAction, load_options
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "ApiError",
    "ConfigurationError",
    "ConverterAction",
    "MigrationError",
    "TrelloToGitLabMigrator",
    "load_options",
    "main",
    "setup_logging",
]
