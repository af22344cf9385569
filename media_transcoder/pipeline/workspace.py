"""Per-job workspace directories.

Each job owns one directory under the workspace root. Names combine a
nanosecond timestamp, the process id, a process-wide counter and a random
suffix, and directories are created with an exclusive ``mkdir`` so two
active jobs can never share a path, even across worker processes.
"""

import itertools
import logging
import os
import secrets
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from media_transcoder.core.exceptions import ResourceError

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "job-"
MAX_CREATE_ATTEMPTS = 16

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def _next_sequence() -> int:
    with _counter_lock:
        return next(_counter)


def new_job_id() -> str:
    return f"{time.time_ns():x}-{os.getpid():x}-{_next_sequence():x}-{secrets.token_hex(4)}"


@dataclass
class Workspace:
    """An exclusively owned job directory."""

    job_id: str
    path: Path
    released: bool = False

    def path_for(self, name: str) -> Path:
        return self.path / name


class WorkspaceManager:
    """Allocates job directories and guarantees their teardown."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def acquire(self) -> Workspace:
        """Create a directory unique to this call.

        Raises:
            ResourceError: If the root is unwritable or the disk is full.
        """
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(
                f"Workspace root {self.root} is not writable: {e.strerror or e}",
                original_error=e,
            ) from e

        for _ in range(MAX_CREATE_ATTEMPTS):
            job_id = new_job_id()
            path = self.root / f"{WORKSPACE_PREFIX}{job_id}"
            try:
                path.mkdir(mode=0o700)
            except FileExistsError:
                logger.warning("[workspace] %s already exists; retrying with a new name", path.name)
                continue
            except OSError as e:
                raise ResourceError(
                    f"Could not create a job workspace: {e.strerror or e}",
                    original_error=e,
                ) from e
            logger.debug("[%s] Workspace acquired at %s", job_id, path)
            return Workspace(job_id=job_id, path=path)

        raise ResourceError(f"Could not allocate a unique workspace under {self.root}")

    def release(self, workspace: Workspace) -> None:
        """Remove the workspace and everything in it.

        Safe to call more than once. Removal errors are logged and suppressed so
        they never mask the job's real outcome.
        """
        if workspace.released:
            return
        workspace.released = True
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("[%s] Failed to remove workspace %s: %s", workspace.job_id, workspace.path, e)
        else:
            logger.debug("[%s] Workspace released", workspace.job_id)

    @contextmanager
    def scope(self) -> Iterator[Workspace]:
        workspace = self.acquire()
        try:
            yield workspace
        finally:
            self.release(workspace)

    def sweep_stale(self, max_age_seconds: int, now: Optional[float] = None) -> int:
        """Delete workspaces left behind by crashed processes.

        Returns:
            Number of directories removed.
        """
        if not self.root.exists():
            return 0
        now = now if now is not None else time.time()
        cutoff = now - max_age_seconds
        removed = 0
        for entry in self.root.iterdir():
            if not entry.name.startswith(WORKSPACE_PREFIX) or not entry.is_dir():
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                shutil.rmtree(entry)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("[sweep] Could not remove %s: %s", entry, e)
        if removed:
            logger.info("[sweep] Removed %d stale workspace(s) from %s", removed, self.root)
        return removed
