"""
Utility functions for the Trello to GitLab migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess

from .exceptions import ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)


class PassError(ConfigurationError):
    """Raised when a secret cannot be read from the pass utility."""


def setup_logging(*, verbose: bool = False, log_file: str | None = "migration.log") -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.INFO)


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[:max_length]


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)

    try:
        result = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        msg = (
            f"Failed to get value from pass at '{pass_path}'.\n"
            f"Error: {e.stderr.strip()}\n"
            f"Return code: {e.returncode}"
        )
        raise PassError(msg) from e

    return result.stdout.strip()


def resolve_secret(
    value: str | None,
    *,
    env_var: str,
    pass_path: str | None = None,
    default_pass_path: str | None = None,
) -> str | None:
    """Resolve a secret from the options value, a pass path, an env var or a default pass location."""
    if value:
        return value

    if pass_path:
        return get_pass_value(pass_path)

    from_env = os.environ.get(env_var)
    if from_env:
        return from_env

    if default_pass_path:
        try:
            return get_pass_value(default_pass_path)
        except (ValueError, PassError):
            logger.debug(f"No secret found for {env_var} in pass at {default_pass_path}")
    return None
