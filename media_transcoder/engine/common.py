"""Helpers shared by the recipes: form parsing, staging names, timeouts."""

import logging
import os
from typing import Mapping, Optional, Sequence

from media_transcoder.core.exceptions import ValidationError
from media_transcoder.pipeline.models import InputFile

MB = 1024 * 1024

logger = logging.getLogger(__name__)


def clamp_int(params: Mapping[str, str], key: str, default: int, low: int, high: int) -> int:
    """Parse an integer field, falling back to ``default`` and clamping to [low, high]."""
    raw = params.get(key)
    try:
        value = int(str(raw).strip()) if raw not in (None, "") else default
    except ValueError:
        value = default
    return max(low, min(high, value))


def parse_float(params: Mapping[str, str], key: str, default: Optional[float] = None) -> Optional[float]:
    raw = params.get(key)
    if raw in (None, ""):
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        raise ValidationError(f"'{key}' must be a number, got '{raw}'.")


def choice(params: Mapping[str, str], key: str, default: str, allowed: Sequence[str]) -> str:
    """Return the field value if it is one of ``allowed``; reject anything else."""
    raw = params.get(key)
    value = str(raw).strip().lower() if raw not in (None, "") else default
    if value not in allowed:
        raise ValidationError(
            f"Invalid {key} '{raw}'. Choose one of: {', '.join(allowed)}."
        )
    return value


def flag(params: Mapping[str, str], key: str, default: bool) -> bool:
    raw = params.get(key)
    if raw in (None, ""):
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def single(uploads: Sequence[InputFile]) -> InputFile:
    if not uploads:
        raise ValidationError("No file provided.")
    if len(uploads) > 1:
        raise ValidationError("This tool accepts exactly one file.")
    return uploads[0]


def extension_of(upload: InputFile, fallback: str) -> str:
    """Lower-case extension of the client's file name, without the dot."""
    ext = os.path.splitext(upload.declared_name)[1].lower().lstrip(".")
    return ext if ext.isalnum() else fallback


def stage_as(upload: InputFile, name: str) -> InputFile:
    """Re-key an upload to a fixed workspace name, keeping the client's name for checks."""
    return InputFile(name=name, data=upload.data, mime_type=upload.mime_type, filename=upload.declared_name)


def scaled_timeout(data: bytes, seconds_per_mb: float, minimum: float) -> float:
    """Stage budget proportional to input size, never below ``minimum``."""
    return max(minimum, len(data) / MB * seconds_per_mb)


def keep_smaller(original: bytes, candidate: bytes) -> bytes:
    """Return the original when re-encoding made the file bigger."""
    if len(candidate) >= len(original):
        logger.info("Re-encode grew the file (%d -> %d bytes); keeping original", len(original), len(candidate))
        return original
    return candidate
