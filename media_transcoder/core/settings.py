"""Centralized pipeline settings with validation and effective-value reporting."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from media_transcoder.core.utils import env_float, env_int

logger = logging.getLogger(__name__)

MB = 1024 * 1024

DEFAULT_MAX_INPUT_MB = 100
DEFAULT_MAX_OUTPUT_MB = 200
DEFAULT_STAGE_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True)
class PipelineSettings:
    workspace_root: Path
    max_input_bytes: int
    max_output_bytes: int
    stage_timeout_seconds: float
    tool_output_tail_bytes: int
    tool_kill_grace_seconds: float
    workspace_max_age_seconds: int
    workspace_sweep_interval_seconds: int

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["workspace_root"] = str(self.workspace_root)
        return data


def _positive_int(name: str, default: int) -> int:
    value = env_int(name, default)
    if value <= 0:
        logger.warning("[settings] Non-positive %s=%s; using %s", name, value, default)
        return default
    return value


def _positive_float(name: str, default: float) -> float:
    value = env_float(name, default)
    if value <= 0:
        logger.warning("[settings] Non-positive %s=%s; using %s", name, value, default)
        return default
    return value


def default_workspace_root() -> Path:
    return Path(tempfile.gettempdir()) / "media-transcoder"


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    raw_root = (os.environ.get("WORKSPACE_ROOT") or "").strip()
    workspace_root = Path(raw_root) if raw_root else default_workspace_root()

    return PipelineSettings(
        workspace_root=workspace_root,
        max_input_bytes=_positive_int("MAX_INPUT_MB", DEFAULT_MAX_INPUT_MB) * MB,
        max_output_bytes=_positive_int("MAX_OUTPUT_MB", DEFAULT_MAX_OUTPUT_MB) * MB,
        stage_timeout_seconds=_positive_float("STAGE_TIMEOUT_SECONDS", DEFAULT_STAGE_TIMEOUT_SECONDS),
        tool_output_tail_bytes=_positive_int("TOOL_OUTPUT_TAIL_BYTES", 64 * 1024),
        tool_kill_grace_seconds=_positive_float("TOOL_KILL_GRACE_SECONDS", 5.0),
        workspace_max_age_seconds=_positive_int("WORKSPACE_MAX_AGE_SECONDS", 3600),
        workspace_sweep_interval_seconds=_positive_int("WORKSPACE_SWEEP_INTERVAL_SECONDS", 300),
    )
