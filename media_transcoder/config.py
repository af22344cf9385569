"""Application configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from media_transcoder.core.settings import get_pipeline_settings

# Room for multipart boundaries and form fields on top of the file itself
FORM_OVERHEAD_BYTES = 1024 * 1024


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime configuration values consumed by the Flask app."""

    max_content_length: int
    api_token: Optional[str] = None


def load_runtime_config() -> RuntimeConfig:
    """Load runtime configuration from the environment-backed pipeline settings."""
    settings = get_pipeline_settings()
    return RuntimeConfig(
        max_content_length=settings.max_input_bytes + FORM_OVERHEAD_BYTES,
        api_token=os.environ.get("API_TOKEN") or None,
    )
