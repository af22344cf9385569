"""Runtime bootstrap for the workspace sweeper daemon."""

from __future__ import annotations

import threading

from media_transcoder.services import transcode_service

_bootstrap_lock = threading.Lock()
_bootstrap_started = False


def bootstrap_runtime() -> None:
    """Start background services once per process."""
    global _bootstrap_started
    with _bootstrap_lock:
        if _bootstrap_started:
            return

        threading.Thread(
            target=transcode_service.cleanup_daemon,
            daemon=True,
            name="workspace-sweep-daemon",
        ).start()
        _bootstrap_started = True
