"""Read produced output files back into memory."""

import logging
import mimetypes
from dataclasses import dataclass
from typing import Dict, Sequence

from media_transcoder.core.exceptions import MissingOutputError, ResourceError
from media_transcoder.core.utils import format_size_mb
from media_transcoder.pipeline.models import OutputSpec
from media_transcoder.pipeline.workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class CollectedOutput:
    name: str
    data: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)


def content_type_for(output: OutputSpec) -> str:
    if output.content_type:
        return output.content_type
    guessed, _ = mimetypes.guess_type(output.name)
    return guessed or DEFAULT_CONTENT_TYPE


class ResultCollector:
    """Collects declared outputs, bounding the total bytes held in memory."""

    def __init__(self, max_total_bytes: int) -> None:
        self.max_total_bytes = max_total_bytes

    def collect(self, workspace: Workspace, outputs: Sequence[OutputSpec]) -> Dict[str, CollectedOutput]:
        """Read every declared output, in declaration order.

        Raises:
            MissingOutputError: A declared output does not exist.
            ResourceError: The outputs together exceed the size cap.
        """
        sizes = []
        for output in outputs:
            path = workspace.path_for(output.name)
            if not path.is_file():
                raise MissingOutputError.for_output(output.name)
            sizes.append(path.stat().st_size)

        total = sum(sizes)
        if total > self.max_total_bytes:
            raise ResourceError(
                f"Output is too large to return: {format_size_mb(total)} "
                f"(limit {format_size_mb(self.max_total_bytes)})."
            )

        collected: Dict[str, CollectedOutput] = {}
        for output in outputs:
            data = workspace.path_for(output.name).read_bytes()
            collected[output.name] = CollectedOutput(
                name=output.name,
                data=data,
                content_type=content_type_for(output),
            )

        logger.info(
            "[%s] Collected %d output(s), %s total",
            workspace.job_id, len(collected), format_size_mb(total),
        )
        return collected
