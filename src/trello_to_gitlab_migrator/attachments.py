"""Attachment migration from Trello to GitLab project uploads."""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Final
from urllib.parse import unquote, urlparse

import requests
from gitlab.exceptions import GitlabError

from .content import AttachmentMapping
from .exceptions import ApiError

if TYPE_CHECKING:
    from .models import SourceAttachment
    from .protocols import SourceClient, TargetClient

logger: logging.Logger = logging.getLogger(__name__)

_ILLEGAL_FILENAME_CHARS: Final[re.Pattern[str]] = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_FALLBACK_FILENAME: Final[str] = "attachment"
_MAX_FILENAME_LENGTH: Final[int] = 200


def sanitize_filename(name: str) -> str:
    """Reduce an attachment name to a single safe path component."""
    name = _ILLEGAL_FILENAME_CHARS.sub("_", name)
    while ".." in name:
        name = name.replace("..", ".")
    name = name.strip(" .")
    return name[:_MAX_FILENAME_LENGTH] or _FALLBACK_FILENAME


def attachment_filename(attachment: SourceAttachment) -> str:
    """Filename from the URL path (Trello keeps the original name there), else the attachment name."""
    from_url = unquote(Path(urlparse(attachment.url).path).name)
    return sanitize_filename(from_url or attachment.name)


class AttachmentRehoster:
    """Downloads card attachments from Trello and uploads them to the GitLab project.

    Failures never abort the card: they yield a mapping without upload, which
    the description later renders as a link to the original file.
    """

    _source: SourceClient
    _target: TargetClient

    def __init__(self, source: SourceClient, target: TargetClient) -> None:
        self._source = source
        self._target = target
        self.uploaded_files_count: int = 0
        self.failed_files_count: int = 0

    def rehost(self, attachment: SourceAttachment) -> AttachmentMapping:
        try:
            content = self._source.download_attachment(attachment.url)
        except (ApiError, requests.RequestException) as e:
            logger.warning(f"Failed to download attachment {attachment.url}: {e}")
            self.failed_files_count += 1
            return AttachmentMapping(attachment=attachment, upload=None)

        filename = attachment_filename(attachment)
        try:
            with tempfile.TemporaryDirectory(prefix="trello_attachment_") as temp_dir:
                temp_path = Path(temp_dir) / filename
                _ = temp_path.write_bytes(content)
                upload = self._target.upload_file(temp_path, attachment.mime_type)
        except (GitlabError, requests.RequestException, OSError) as e:
            logger.warning(f"Failed to upload attachment {filename}: {e}")
            self.failed_files_count += 1
            return AttachmentMapping(attachment=attachment, upload=None)

        self.uploaded_files_count += 1
        logger.debug(f"Uploaded {filename}: {upload.url}")
        return AttachmentMapping(attachment=attachment, upload=upload)

    def rehost_all(self, attachments: list[SourceAttachment]) -> list[AttachmentMapping]:
        return [self.rehost(attachment) for attachment in attachments]
