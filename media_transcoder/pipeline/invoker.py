"""Run external tools as literal argument vectors.

Commands are never passed through a shell: file names and option values
reach the tool exactly as given. Output (stdout and stderr combined) is kept
as a bounded tail for diagnostics.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional, Sequence, Tuple

from media_transcoder.core.exceptions import (
    JobCancelledError,
    ToolError,
    ToolTimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 8192


@dataclass(frozen=True)
class ToolInvocation:
    """Diagnostic record of one process run. Never returned to HTTP callers."""

    argv: Tuple[str, ...]
    returncode: Optional[int]
    output_tail: str
    elapsed_seconds: float
    timed_out: bool = False
    cancelled: bool = False


class _TailBuffer:
    """Drains a pipe on a background thread, keeping only the last N bytes."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        self._stream = stream
        self._limit = limit
        self._data = bytearray()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._drain, daemon=True, name="tool-output-reader")
        self._thread.start()

    def _drain(self) -> None:
        with self._stream:
            for chunk in iter(lambda: self._stream.read1(READ_CHUNK_BYTES), b""):
                with self._lock:
                    self._data.extend(chunk)
                    overflow = len(self._data) - self._limit
                    if overflow > 0:
                        del self._data[:overflow]

    def text(self, timeout: float = 5.0) -> str:
        self._thread.join(timeout)
        # a grandchild may still hold the pipe open after the join times out
        with self._lock:
            snapshot = bytes(self._data)
        return snapshot.decode("utf-8", errors="replace")


def resolve_executable(program: str) -> Optional[str]:
    """Locate ``program`` on PATH (explicit paths are checked as-is)."""
    if os.sep in program or (os.altsep and os.altsep in program):
        return program if os.access(program, os.X_OK) else None
    return shutil.which(program)


class ToolInvoker:
    """Executes one external command with a timeout and bounded output capture."""

    def __init__(
        self,
        max_output_bytes: int = 64 * 1024,
        kill_grace_seconds: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.max_output_bytes = max_output_bytes
        self.kill_grace_seconds = kill_grace_seconds
        self.poll_interval = poll_interval

    def run(
        self,
        working_dir: Path,
        argv: Sequence[str],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
        label: Optional[str] = None,
    ) -> ToolInvocation:
        """Run ``argv`` in ``working_dir`` and wait for it.

        Args:
            working_dir: Directory the process runs in (the job workspace).
            argv: Literal argument vector; ``argv[0]`` is the program.
            timeout: Wall-clock budget in seconds.
            cancel_event: Set by the caller to abort the run.
            label: Stage name used in errors and logs.

        Returns:
            The invocation record for a zero exit status.

        Raises:
            ToolError: Program missing or non-zero exit.
            ToolTimeoutError: The budget expired; the process was terminated.
            JobCancelledError: ``cancel_event`` was set; the process was terminated.
        """
        if not argv or not all(isinstance(arg, str) for arg in argv):
            raise ValidationError("Tool command must be a non-empty list of strings.", stage=label)

        argv = tuple(argv)
        program = os.path.basename(argv[0])
        stage = label or program
        executable = resolve_executable(argv[0])
        if executable is None:
            raise ToolError.not_installed(stage, program)

        logger.info("[tool] %s: %s", stage, " ".join(argv))
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                (executable,) + argv[1:],
                cwd=str(working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                shell=False,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ToolError(f"Could not start {program}: {e}", stage=stage, original_error=e) from e

        tail = _TailBuffer(proc.stdout, self.max_output_bytes)
        deadline = started + timeout
        timed_out = cancelled = False

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                try:
                    proc.wait(timeout=min(self.poll_interval, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        except BaseException:
            # the child runs in its own session and never sees our SIGINT
            logger.warning("[tool] %s interrupted; terminating pid %s", stage, proc.pid)
            self._terminate(proc)
            raise

        if timed_out or cancelled:
            self._terminate(proc)

        invocation = ToolInvocation(
            argv=argv,
            returncode=proc.returncode,
            output_tail=tail.text(),
            elapsed_seconds=time.monotonic() - started,
            timed_out=timed_out,
            cancelled=cancelled,
        )

        if cancelled:
            logger.info("[tool] %s cancelled after %.2fs", stage, invocation.elapsed_seconds)
            raise JobCancelledError(f"{program} was cancelled.", stage=stage)
        if timed_out:
            logger.warning("[tool] %s timed out after %.2fs", stage, invocation.elapsed_seconds)
            raise ToolTimeoutError.after(stage, program, timeout, invocation.output_tail)
        if proc.returncode != 0:
            logger.error(
                "[tool] %s exited with %s after %.2fs. Output tail:\n%s",
                stage, proc.returncode, invocation.elapsed_seconds, invocation.output_tail,
            )
            raise ToolError.nonzero_exit(stage, program, proc.returncode, invocation.output_tail)

        logger.info("[tool] %s finished in %.2fs", stage, invocation.elapsed_seconds)
        return invocation

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process (its whole session on POSIX), then SIGKILL after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            pass
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass
