"""Job orchestration: stage inputs, run stages in order, collect, tear down.

State per job::

    created -> inputs_staged -> (stage_running -> stage_complete)* -> outputs_collected -> torn_down

``failed`` is reachable from every non-terminal state. The workspace is
released before either terminal state is entered, on every exit path.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

from media_transcoder.core.exceptions import (
    JobCancelledError,
    MissingOutputError,
    ToolError,
    ValidationError,
)
from media_transcoder.core.settings import PipelineSettings, get_pipeline_settings
from media_transcoder.pipeline.collector import CollectedOutput, ResultCollector
from media_transcoder.pipeline.invoker import ToolInvoker
from media_transcoder.pipeline.materializer import InputMaterializer
from media_transcoder.pipeline.models import (
    Alternatives,
    ExternalTool,
    JobSpec,
    LibraryCall,
    Stage,
)
from media_transcoder.pipeline.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    CREATED = "created"
    INPUTS_STAGED = "inputs_staged"
    STAGE_RUNNING = "stage_running"
    STAGE_COMPLETE = "stage_complete"
    OUTPUTS_COLLECTED = "outputs_collected"
    TORN_DOWN = "torn_down"
    FAILED = "failed"


TERMINAL_STATES = (JobState.TORN_DOWN, JobState.FAILED)


@dataclass(frozen=True)
class JobResult:
    job_id: str
    outputs: Dict[str, CollectedOutput]
    elapsed_seconds: float

    @property
    def primary(self) -> CollectedOutput:
        return next(iter(self.outputs.values()))

    @property
    def total_bytes(self) -> int:
        return sum(o.size for o in self.outputs.values())


@dataclass
class JobRun:
    """Mutable bookkeeping for one job; exposed to observers for diagnostics."""

    label: str
    state: JobState = JobState.CREATED
    job_id: Optional[str] = None
    current_stage: Optional[str] = None
    history: List[JobState] = field(default_factory=lambda: [JobState.CREATED])

    def advance(self, state: JobState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Job '{self.label}' is already {self.state.value}")
        self.state = state
        self.history.append(state)
        logger.debug("[%s] %s -> %s", self.job_id or self.label, self.label, state.value)


class JobOrchestrator:
    """Runs a JobSpec against a fresh workspace."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        materializer: InputMaterializer,
        invoker: ToolInvoker,
        collector: ResultCollector,
        default_timeout: float,
    ) -> None:
        self.workspaces = workspaces
        self.materializer = materializer
        self.invoker = invoker
        self.collector = collector
        self.default_timeout = default_timeout

    @classmethod
    def from_settings(cls, settings: Optional[PipelineSettings] = None) -> "JobOrchestrator":
        settings = settings or get_pipeline_settings()
        return cls(
            workspaces=WorkspaceManager(settings.workspace_root),
            materializer=InputMaterializer(settings.max_input_bytes),
            invoker=ToolInvoker(
                max_output_bytes=settings.tool_output_tail_bytes,
                kill_grace_seconds=settings.tool_kill_grace_seconds,
            ),
            collector=ResultCollector(settings.max_output_bytes),
            default_timeout=settings.stage_timeout_seconds,
        )

    def run(
        self,
        spec: JobSpec,
        cancel_event: Optional[threading.Event] = None,
        run: Optional[JobRun] = None,
    ) -> JobResult:
        """Execute ``spec`` and return copies of its outputs.

        Raises:
            JobFailure: Any classified failure; the workspace is already gone.
        """
        run = run or JobRun(label=spec.label)
        started = time.monotonic()
        try:
            spec.validate()
            workspace = self.workspaces.acquire()
        except BaseException:
            run.advance(JobState.FAILED)
            raise

        run.job_id = workspace.job_id
        logger.info(
            "[%s] Job '%s' started: %d input(s), %d stage(s)",
            run.job_id, spec.label, len(spec.inputs), len(spec.stages),
        )
        try:
            outputs = self._execute(spec, workspace, run, cancel_event)
        except BaseException as e:
            self.workspaces.release(workspace)
            run.advance(JobState.FAILED)
            logger.info(
                "[%s] Job '%s' failed in %s: %s",
                run.job_id, spec.label, run.current_stage or "setup", e,
            )
            raise

        self.workspaces.release(workspace)
        run.advance(JobState.TORN_DOWN)
        elapsed = time.monotonic() - started
        logger.info("[%s] Job '%s' completed in %.2fs", run.job_id, spec.label, elapsed)
        return JobResult(job_id=workspace.job_id, outputs=outputs, elapsed_seconds=elapsed)

    def _execute(
        self,
        spec: JobSpec,
        workspace: Workspace,
        run: JobRun,
        cancel_event: Optional[threading.Event],
    ) -> Dict[str, CollectedOutput]:
        buffers: Dict[str, bytes] = {}
        for item in spec.inputs:
            self.materializer.write(
                workspace,
                item.name,
                item.data,
                mime_type=item.mime_type,
                allowed=spec.allowed,
                filename=item.filename,
            )
            buffers[item.name] = item.data
        run.advance(JobState.INPUTS_STAGED)

        for stage in spec.stages:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError("Job was cancelled before it finished.", stage=stage.name)
            run.current_stage = stage.name
            run.advance(JobState.STAGE_RUNNING)
            self._run_stage(stage, workspace, buffers, cancel_event)
            run.advance(JobState.STAGE_COMPLETE)

        run.current_stage = None
        outputs = self.collector.collect(workspace, spec.outputs)
        run.advance(JobState.OUTPUTS_COLLECTED)
        return outputs

    def _run_stage(
        self,
        stage: Stage,
        workspace: Workspace,
        buffers: Dict[str, bytes],
        cancel_event: Optional[threading.Event],
    ) -> None:
        if isinstance(stage, Alternatives):
            self._run_alternatives(stage, workspace, buffers, cancel_event)
            return

        started = time.monotonic()
        if isinstance(stage, ExternalTool):
            self.invoker.run(
                workspace.path,
                stage.argv,
                stage.timeout or self.default_timeout,
                cancel_event=cancel_event,
                label=stage.name,
            )
        elif isinstance(stage, LibraryCall):
            self._run_library_call(stage, workspace, buffers)
        else:
            raise TypeError(f"Unsupported stage type: {type(stage).__name__}")

        for name in stage.produces:
            if not workspace.path_for(name).is_file():
                raise MissingOutputError.for_output(name, stage=stage.name)

        logger.info("[%s] Stage '%s' done in %.2fs", workspace.job_id, stage.name, time.monotonic() - started)

    def _run_library_call(self, stage: LibraryCall, workspace: Workspace, buffers: Dict[str, bytes]) -> None:
        args = []
        for name in stage.inputs:
            if name not in buffers:
                buffers[name] = workspace.path_for(name).read_bytes()
            args.append(buffers[name])

        try:
            result = stage.func(*args, **dict(stage.options))
        except stage.errors as e:
            logger.warning("[%s] Library call '%s' failed: %s", workspace.job_id, stage.name, e)
            raise ToolError(
                f"Could not process the file: {e}",
                stage=stage.name,
                original_error=e,
            ) from e

        produced = _library_outputs(stage, result)
        for name in stage.outputs:
            if name not in produced:
                raise MissingOutputError.for_output(name, stage=stage.name)
            self.materializer.publish(workspace, name, produced[name])
            buffers[name] = produced[name]

    def _run_alternatives(
        self,
        stage: Alternatives,
        workspace: Workspace,
        buffers: Dict[str, bytes],
        cancel_event: Optional[threading.Event],
    ) -> None:
        if not stage.choices:
            raise ValidationError(f"Stage '{stage.name}' has no alternatives.", stage=stage.name)
        for index, choice in enumerate(stage.choices):
            exhausted = index + 1 == len(stage.choices)
            try:
                self._run_stage(choice, workspace, buffers, cancel_event)
                if index:
                    logger.info("[%s] Stage '%s' succeeded with fallback '%s'", workspace.job_id, stage.name, choice.name)
                return
            except ToolError as e:
                logger.warning(
                    "[%s] Stage '%s' choice '%s' failed (%s); %s",
                    workspace.job_id, stage.name, choice.name, e.error_type,
                    "no alternatives left" if exhausted else "trying next",
                )
                for name in choice.produces:
                    workspace.path_for(name).unlink(missing_ok=True)
                    buffers.pop(name, None)
                if exhausted:
                    raise


def _library_outputs(stage: LibraryCall, result) -> Mapping[str, bytes]:
    if isinstance(result, (bytes, bytearray, memoryview)):
        if len(stage.outputs) != 1:
            raise TypeError(
                f"Library call '{stage.name}' returned one buffer for {len(stage.outputs)} outputs"
            )
        return {stage.outputs[0]: bytes(result)}
    if isinstance(result, Mapping):
        return {k: bytes(v) for k, v in result.items()}
    raise TypeError(f"Library call '{stage.name}' returned {type(result).__name__}, expected bytes or mapping")


_default_orchestrator: Optional[JobOrchestrator] = None
_default_lock = threading.Lock()


def get_orchestrator() -> JobOrchestrator:
    global _default_orchestrator
    with _default_lock:
        if _default_orchestrator is None:
            _default_orchestrator = JobOrchestrator.from_settings()
        return _default_orchestrator


def run_job(spec: JobSpec, cancel_event: Optional[threading.Event] = None) -> JobResult:
    """Run ``spec`` with the process-wide orchestrator built from settings."""
    return get_orchestrator().run(spec, cancel_event=cancel_event)
