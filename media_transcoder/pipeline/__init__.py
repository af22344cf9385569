"""Transcoding job pipeline: workspace, staging, tool invocation, collection."""

from media_transcoder.pipeline.models import (
    AllowList,
    Alternatives,
    ExternalTool,
    InputFile,
    JobSpec,
    LibraryCall,
    OutputSpec,
    Stage,
)
from media_transcoder.pipeline.orchestrator import JobOrchestrator, JobResult, JobState, run_job

__all__ = [
    "AllowList",
    "Alternatives",
    "ExternalTool",
    "InputFile",
    "JobOrchestrator",
    "JobResult",
    "JobSpec",
    "JobState",
    "LibraryCall",
    "OutputSpec",
    "Stage",
    "run_job",
]
