"""Temporary admin elevation of mapped GitLab users.

GitLab only accepts ``created_at``/``updated_at`` and impersonated authors
for administrators. The bracket grants admin to the mapped users that lack
it, runs the body, then revokes it from exactly those users, whatever
happens in between.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

import requests
from gitlab.exceptions import GitlabError

from .progress import ConversionStep, ProgressReport

if TYPE_CHECKING:
    from collections.abc import Collection, Iterator, Sequence

    from .models import TargetUser
    from .progress import ProgressSink
    from .protocols import TargetClient

logger: logging.Logger = logging.getLogger(__name__)


def set_admin_privileges(
    target: TargetClient,
    users: Sequence[TargetUser],
    admin: bool,
    progress: ProgressSink,
    step: ConversionStep,
    changed: list[TargetUser] | None = None,
) -> list[TargetUser]:
    """Grant or revoke admin for each user; returns the users changed successfully.

    A failure for one user is reported and does not stop the others. Users
    are appended to ``changed`` as they succeed, so a caller still knows who
    was elevated if something unexpected aborts the loop.
    """
    changed = [] if changed is None else changed
    for i, user in enumerate(users):
        progress(ProgressReport(step, i, len(users)))
        try:
            target.set_admin(user.id, admin)
        except (GitlabError, requests.RequestException) as e:
            verb = "granting" if admin else "revoking"
            error = f"Error while {verb} admin privilege: {e}\nUser: {user.id} ({user.username})"
            progress(ProgressReport(step, i, len(users), errors=(error,)))
        else:
            changed.append(user)
    return changed


@contextmanager
def impersonation(
    target: TargetClient,
    member_user_ids: Collection[int],
    progress: ProgressSink,
) -> Iterator[list[TargetUser]]:
    """Elevate the mapped non-admin users for the duration of the block."""
    progress(ProgressReport(ConversionStep.GRANT_ADMIN_PRIVILEGES))
    candidates = [user for user in target.list_users() if user.id in member_user_ids and not user.is_admin]
    elevated: list[TargetUser] = []

    try:
        _ = set_admin_privileges(
            target, candidates, True, progress, ConversionStep.GRANT_ADMIN_PRIVILEGES, changed=elevated
        )
        progress(ProgressReport(ConversionStep.ADMIN_PRIVILEGES_GRANTED))
        logger.info(f"Granted admin privileges to {len(elevated)} users")
        yield elevated
    finally:
        progress(ProgressReport(ConversionStep.REVOKE_ADMIN_PRIVILEGES))
        revoked = set_admin_privileges(target, elevated, False, progress, ConversionStep.REVOKE_ADMIN_PRIVILEGES)
        progress(ProgressReport(ConversionStep.ADMIN_PRIVILEGES_REVOKED))
        logger.info(f"Revoked admin privileges from {len(revoked)} of {len(elevated)} users")
