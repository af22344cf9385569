"""Stage uploaded buffers into a workspace under validated names."""

import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from media_transcoder.core.exceptions import ResourceError, ValidationError
from media_transcoder.core.utils import format_size_mb
from media_transcoder.pipeline.models import AllowList
from media_transcoder.pipeline.workspace import Workspace

logger = logging.getLogger(__name__)


def validate_name(name: str) -> str:
    """Return ``name`` if it is a plain file name, else raise ValidationError."""
    if not name or not name.strip():
        raise ValidationError.bad_name(name or "", "name is empty")
    if "\x00" in name:
        raise ValidationError.bad_name(name, "name contains a NUL byte")
    if ".." in name.replace("\\", "/").split("/"):
        raise ValidationError.bad_name(name, "path traversal is not allowed")
    if name.startswith(("/", "\\")) or (len(name) > 1 and name[1] == ":"):
        raise ValidationError.bad_name(name, "absolute paths are not allowed")
    if "/" in name or "\\" in name:
        raise ValidationError.bad_name(name, "directories are not allowed")
    if name in (".", ".."):
        raise ValidationError.bad_name(name, "path traversal is not allowed")
    if name.startswith("-"):
        raise ValidationError.bad_name(name, "name must not start with '-'")
    return name


class InputMaterializer:
    """Writes buffers into a workspace atomically."""

    def __init__(self, max_file_bytes: int) -> None:
        self.max_file_bytes = max_file_bytes

    def write(
        self,
        workspace: Workspace,
        name: str,
        data: bytes,
        mime_type: Optional[str] = None,
        allowed: Optional[AllowList] = None,
        filename: Optional[str] = None,
    ) -> Path:
        """Validate and write one input file.

        Args:
            workspace: The job's workspace.
            name: Workspace file name.
            data: File contents.
            mime_type: Declared MIME type (for the allow-list).
            allowed: Per-endpoint allow-list; None accepts any type.
            filename: Client-declared name checked against the allow-list.

        Returns:
            Path of the written file.

        Raises:
            ValidationError: Bad name, empty or oversized buffer, type not allowed.
            ResourceError: The file could not be written.
        """
        validate_name(name)
        declared = filename or name
        if filename is not None:
            validate_name(filename)
        if not data:
            raise ValidationError(f"'{declared}' is empty.")
        if len(data) > self.max_file_bytes:
            raise ValidationError.too_large(declared, len(data), self.max_file_bytes)
        if allowed is not None and not allowed.permits(declared, mime_type):
            raise ValidationError.not_allowed(declared, mime_type)

        path = self._atomic_write(workspace, name, data)
        logger.info("[%s] Staged %s (%s)", workspace.job_id, name, format_size_mb(len(data)))
        return path

    def publish(self, workspace: Workspace, name: str, data: bytes) -> Path:
        """Write a library-call output so later stages and the collector see it."""
        validate_name(name)
        return self._atomic_write(workspace, name, data)

    def _atomic_write(self, workspace: Workspace, name: str, data: bytes) -> Path:
        target = workspace.path_for(name)
        tmp = workspace.path_for(f".{name}.{secrets.token_hex(4)}.part")
        try:
            with open(tmp, "xb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ResourceError(
                f"Could not write '{name}' to the job workspace: {e.strerror or e}",
                original_error=e,
            ) from e
        return target
