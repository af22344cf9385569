import sys
import tempfile
import threading
import unittest
from pathlib import Path

from media_transcoder.core.exceptions import (
    DependencyError,
    JobCancelledError,
    MissingOutputError,
    ResourceError,
    ToolError,
    ToolTimeoutError,
    ValidationError,
)
from media_transcoder.pipeline.collector import ResultCollector
from media_transcoder.pipeline.invoker import ToolInvoker
from media_transcoder.pipeline.materializer import InputMaterializer
from media_transcoder.pipeline.models import (
    Alternatives,
    ExternalTool,
    InputFile,
    JobSpec,
    LibraryCall,
    OutputSpec,
)
from media_transcoder.pipeline.orchestrator import JobOrchestrator, JobRun, JobState
from media_transcoder.pipeline.workspace import WorkspaceManager

COPY = "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])"


def _copy_stage(src="in.rgb", dst="out.rgb", name="copy"):
    return ExternalTool(name, (sys.executable, "-c", COPY, src, dst), (src,), (dst,))


class _RecordingInvoker(ToolInvoker):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = []

    def run(self, working_dir, argv, timeout, cancel_event=None, label=None):
        self.calls.append(label)
        return super().run(working_dir, argv, timeout, cancel_event=cancel_event, label=label)


class _RecordingWorkspaces(WorkspaceManager):
    def __init__(self, root):
        super().__init__(root)
        self.paths = []
        self._lock = threading.Lock()

    def acquire(self):
        workspace = super().acquire()
        with self._lock:
            self.paths.append(workspace.path)
        return workspace


class TestJobOrchestrator(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "ws"
        self.workspaces = _RecordingWorkspaces(self.root)
        self.invoker = _RecordingInvoker(kill_grace_seconds=1.0, poll_interval=0.05)
        self.orchestrator = JobOrchestrator(
            workspaces=self.workspaces,
            materializer=InputMaterializer(10 * 1024 * 1024),
            invoker=self.invoker,
            collector=ResultCollector(20 * 1024 * 1024),
            default_timeout=30,
        )

    def tearDown(self):
        self._tmp.cleanup()

    def assertNoWorkspacesLeft(self):
        leftovers = list(self.root.iterdir()) if self.root.exists() else []
        self.assertEqual(leftovers, [])

    def test_rgb_buffer_round_trips_through_copy_stage(self):
        pixels = bytes((x * 7 + y * 13) % 256 for y in range(100) for x in range(100) for _ in range(3))
        self.assertEqual(len(pixels), 30000)
        spec = JobSpec(
            inputs=(InputFile("in.rgb", pixels),),
            stages=(_copy_stage(),),
            outputs=(OutputSpec("out.rgb"),),
        )
        run = JobRun(label="copy")

        result = self.orchestrator.run(spec, run=run)

        self.assertEqual(result.primary.data, pixels)
        self.assertEqual(result.primary.content_type, "application/octet-stream")
        self.assertNoWorkspacesLeft()
        self.assertEqual(
            run.history,
            [
                JobState.CREATED,
                JobState.INPUTS_STAGED,
                JobState.STAGE_RUNNING,
                JobState.STAGE_COMPLETE,
                JobState.OUTPUTS_COLLECTED,
                JobState.TORN_DOWN,
            ],
        )

    def test_tool_failure_tears_down_workspace(self):
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"abc"),),
            stages=(ExternalTool("fail", (sys.executable, "-c", "import sys; sys.exit(2)"), ("in.rgb",), ("out.rgb",)),),
            outputs=(OutputSpec("out.rgb"),),
        )
        run = JobRun(label="fail")
        with self.assertRaises(ToolError) as ctx:
            self.orchestrator.run(spec, run=run)
        self.assertEqual(ctx.exception.returncode, 2)
        self.assertEqual(run.state, JobState.FAILED)
        self.assertNoWorkspacesLeft()

    def test_zero_exit_without_output_is_missing_output(self):
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"abc"),),
            stages=(ExternalTool("noop", (sys.executable, "-c", "pass"), ("in.rgb",), ("out.rgb",)),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(MissingOutputError) as ctx:
            self.orchestrator.run(spec)
        self.assertEqual(ctx.exception.stage, "noop")
        self.assertNoWorkspacesLeft()

    def test_timeout_kills_tool_and_tears_down(self):
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"abc"),),
            stages=(
                ExternalTool(
                    "slow",
                    (sys.executable, "-c", "import time; time.sleep(60)"),
                    ("in.rgb",),
                    ("out.rgb",),
                    timeout=0.5,
                ),
            ),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(ToolTimeoutError):
            self.orchestrator.run(spec)
        self.assertNoWorkspacesLeft()

    def test_missing_palette_stage_fails_before_any_tool_runs(self):
        palettegen = ExternalTool(
            "palettegen",
            (sys.executable, "-c", COPY, "input.gif", "palette.png"),
            ("input.gif",),
            ("palette.png",),
        )
        paletteuse = ExternalTool(
            "paletteuse",
            (sys.executable, "-c", COPY, "palette.png", "out.gif"),
            ("input.gif", "palette.png"),
            ("out.gif",),
        )
        inputs = (InputFile("input.gif", b"GIF89a"),)
        outputs = (OutputSpec("out.gif", "image/gif"),)

        result = self.orchestrator.run(JobSpec(inputs, (palettegen, paletteuse), outputs))
        self.assertEqual(result.primary.data, b"GIF89a")
        self.assertEqual(self.invoker.calls, ["palettegen", "paletteuse"])

        self.invoker.calls.clear()
        self.workspaces.paths.clear()
        with self.assertRaises(DependencyError) as ctx:
            self.orchestrator.run(JobSpec(inputs, (paletteuse,), outputs))
        self.assertEqual(ctx.exception.stage, "paletteuse")
        self.assertEqual(self.invoker.calls, [])
        self.assertEqual(self.workspaces.paths, [])

    def test_unsafe_input_name_rejected_and_cleaned_up(self):
        spec = JobSpec(
            inputs=(InputFile("../../etc/passwd", b"root"),),
            stages=(_copy_stage(src="../../etc/passwd"),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(ValidationError):
            self.orchestrator.run(spec)
        self.assertEqual(self.invoker.calls, [])
        self.assertNoWorkspacesLeft()

    def test_cancelled_job_does_not_start_stages(self):
        cancel = threading.Event()
        cancel.set()
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"abc"),),
            stages=(_copy_stage(),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(JobCancelledError):
            self.orchestrator.run(spec, cancel_event=cancel)
        self.assertEqual(self.invoker.calls, [])
        self.assertNoWorkspacesLeft()

    def test_programming_error_propagates_unclassified_and_cleans_up(self):
        def _broken(data):
            raise RuntimeError("bug in recipe")

        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"abc"),),
            stages=(LibraryCall("broken", _broken, ("in.rgb",), ("out.rgb",)),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(RuntimeError):
            self.orchestrator.run(spec)
        self.assertNoWorkspacesLeft()

    def test_declared_library_errors_become_tool_errors(self):
        def _decode(data):
            raise ValueError("cannot identify image")

        spec = JobSpec(
            inputs=(InputFile("in.png", b"abc"),),
            stages=(LibraryCall("decode", _decode, ("in.png",), ("out.png",), errors=(ValueError,)),),
            outputs=(OutputSpec("out.png"),),
        )
        with self.assertRaises(ToolError) as ctx:
            self.orchestrator.run(spec)
        self.assertEqual(ctx.exception.stage, "decode")
        self.assertIsInstance(ctx.exception.original_error, ValueError)

    def test_library_outputs_feed_later_tool_stages(self):
        spec = JobSpec(
            inputs=(InputFile("in.txt", b"hello"),),
            stages=(
                LibraryCall("upper", lambda data, suffix: data.upper() + suffix, ("in.txt",), ("mid.txt",), options={"suffix": b"!"}),
                _copy_stage("mid.txt", "out.txt"),
            ),
            outputs=(OutputSpec("out.txt"),),
        )
        result = self.orchestrator.run(spec)
        self.assertEqual(result.primary.data, b"HELLO!")
        self.assertEqual(result.primary.content_type, "text/plain")

    def test_multiple_library_outputs_in_declared_order(self):
        spec = JobSpec(
            inputs=(InputFile("in.txt", b"ab"),),
            stages=(
                LibraryCall("split", lambda d: {"b.txt": d[1:], "a.txt": d[:1]}, ("in.txt",), ("a.txt", "b.txt")),
            ),
            outputs=(OutputSpec("a.txt"), OutputSpec("b.txt")),
        )
        result = self.orchestrator.run(spec)
        self.assertEqual(list(result.outputs), ["a.txt", "b.txt"])
        self.assertEqual(result.total_bytes, 2)

    def test_alternatives_fall_back_on_tool_failure(self):
        primary = ExternalTool("missing-tool", ("definitely-not-installed-tool-42", "in.bin", "out.bin"), ("in.bin",), ("out.bin",))
        fallback = LibraryCall("library", lambda data: data[::-1], ("in.bin",), ("out.bin",))
        spec = JobSpec(
            inputs=(InputFile("in.bin", b"abc"),),
            stages=(Alternatives("convert", (primary, fallback)),),
            outputs=(OutputSpec("out.bin"),),
        )
        result = self.orchestrator.run(spec)
        self.assertEqual(result.primary.data, b"cba")

    def test_alternatives_discard_partial_output_of_failed_choice(self):
        partial = ExternalTool(
            "partial",
            (sys.executable, "-c", "import sys; open('out.bin', 'wb').write(b'junk'); sys.exit(1)"),
            ("in.bin",),
            ("out.bin",),
        )
        # exits 5 if the failed choice's file is still there
        strict_copy = "import os, shutil, sys; sys.exit(5) if os.path.exists('out.bin') else shutil.copyfile('in.bin', 'out.bin')"
        fallback = ExternalTool("fresh", (sys.executable, "-c", strict_copy), ("in.bin",), ("out.bin",))

        spec = JobSpec(
            inputs=(InputFile("in.bin", b"good"),),
            stages=(Alternatives("convert", (partial, fallback)),),
            outputs=(OutputSpec("out.bin"),),
        )
        self.assertEqual(self.orchestrator.run(spec).primary.data, b"good")
        self.assertEqual(self.invoker.calls, ["partial", "fresh"])

    def test_alternatives_do_not_mask_validation_failures(self):
        calls = []

        def _reject(data):
            raise ValidationError("bad parameters")

        def _never(data):
            calls.append("fallback")
            return data

        spec = JobSpec(
            inputs=(InputFile("in.bin", b"abc"),),
            stages=(
                Alternatives(
                    "convert",
                    (
                        LibraryCall("strict", _reject, ("in.bin",), ("out.bin",)),
                        LibraryCall("fallback", _never, ("in.bin",), ("out.bin",)),
                    ),
                ),
            ),
            outputs=(OutputSpec("out.bin"),),
        )
        with self.assertRaises(ValidationError):
            self.orchestrator.run(spec)
        self.assertEqual(calls, [])
        self.assertNoWorkspacesLeft()

    def test_alternatives_raise_last_failure_when_all_fail(self):
        def _fail(data):
            raise OSError("still broken")

        spec = JobSpec(
            inputs=(InputFile("in.bin", b"abc"),),
            stages=(
                Alternatives(
                    "convert",
                    (
                        ExternalTool("missing", ("definitely-not-installed-tool-42",), ("in.bin",), ("out.bin",)),
                        LibraryCall("library", _fail, ("in.bin",), ("out.bin",)),
                    ),
                ),
            ),
            outputs=(OutputSpec("out.bin"),),
        )
        with self.assertRaises(ToolError) as ctx:
            self.orchestrator.run(spec)
        self.assertEqual(ctx.exception.stage, "library")

    def test_output_cap_raises_resource_error(self):
        self.orchestrator.collector = ResultCollector(10)
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"x" * 100),),
            stages=(_copy_stage(),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(ResourceError):
            self.orchestrator.run(spec)
        self.assertNoWorkspacesLeft()

    def test_concurrent_jobs_use_disjoint_workspaces(self):
        results = {}
        errors = []

        def _job(i):
            payload = bytes([i]) * (1000 + i)
            spec = JobSpec(
                inputs=(InputFile("in.rgb", payload),),
                stages=(_copy_stage(),),
                outputs=(OutputSpec("out.rgb"),),
            )
            try:
                results[i] = (payload, self.orchestrator.run(spec))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=_job, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        for payload, result in results.values():
            self.assertEqual(result.primary.data, payload)
        self.assertEqual(len({r.job_id for _, r in results.values()}), 8)
        self.assertEqual(len(set(self.workspaces.paths)), 8)
        self.assertNoWorkspacesLeft()


class TestJobSpecValidation(unittest.TestCase):
    def test_requires_outputs(self):
        with self.assertRaises(ValidationError):
            JobSpec(inputs=(InputFile("a", b"x"),), stages=(), outputs=()).validate()

    def test_rejects_duplicate_inputs(self):
        with self.assertRaises(ValidationError):
            JobSpec(
                inputs=(InputFile("a", b"x"), InputFile("a", b"y")),
                stages=(),
                outputs=(OutputSpec("a"),),
            ).validate()

    def test_output_must_be_produced(self):
        with self.assertRaises(DependencyError):
            JobSpec(
                inputs=(InputFile("in.rgb", b"x"),),
                stages=(_copy_stage(),),
                outputs=(OutputSpec("other.rgb"),),
            ).validate()

    def test_alternatives_must_agree_on_outputs(self):
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"x"),),
            stages=(Alternatives("pick", (_copy_stage(), _copy_stage(dst="else.rgb"))),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(ValidationError):
            spec.validate()

    def test_empty_alternatives_are_rejected(self):
        spec = JobSpec(
            inputs=(InputFile("in.rgb", b"x"),),
            stages=(Alternatives("pick", ()),),
            outputs=(OutputSpec("out.rgb"),),
        )
        with self.assertRaises(ValidationError) as ctx:
            spec.validate()
        self.assertEqual(ctx.exception.stage, "pick")
