import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from media_transcoder.core.exceptions import (
    JobCancelledError,
    ToolError,
    ToolTimeoutError,
    ValidationError,
)
from media_transcoder.pipeline.invoker import ToolInvoker, _TailBuffer


def _python(script, *args):
    return (sys.executable, "-c", script) + args


class TestToolInvoker(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.cwd = Path(self._tmp.name)
        self.invoker = ToolInvoker(max_output_bytes=1024, kill_grace_seconds=1.0, poll_interval=0.05)

    def tearDown(self):
        self._tmp.cleanup()

    def test_success_runs_in_working_directory(self):
        invocation = self.invoker.run(
            self.cwd,
            _python("open('out.txt', 'w').write('done'); print('ok')"),
            timeout=30,
        )
        self.assertEqual(invocation.returncode, 0)
        self.assertIn("ok", invocation.output_tail)
        self.assertEqual((self.cwd / "out.txt").read_text(), "done")
        self.assertFalse(invocation.timed_out)

    def test_arguments_reach_the_tool_literally(self):
        hostile = "x.txt; touch pwned && echo $HOME"
        self.invoker.run(
            self.cwd,
            _python("import sys; open('arg.txt', 'w').write(sys.argv[1])", hostile),
            timeout=30,
        )
        self.assertEqual((self.cwd / "arg.txt").read_text(), hostile)
        self.assertFalse((self.cwd / "pwned").exists())

    def test_nonzero_exit_raises_tool_error_with_tail(self):
        with self.assertRaises(ToolError) as ctx:
            self.invoker.run(
                self.cwd,
                _python("import sys; sys.stderr.write('corrupt header'); sys.exit(3)"),
                timeout=30,
                label="decode",
            )
        error = ctx.exception
        self.assertIs(type(error), ToolError)
        self.assertEqual(error.returncode, 3)
        self.assertEqual(error.stage, "decode")
        self.assertIn("corrupt header", error.output_tail)
        self.assertNotIn("corrupt header", error.message)

    def test_output_tail_is_bounded(self):
        script = "import sys; sys.stdout.write('x' * 200000 + 'END'); sys.stdout.flush(); sys.exit(1)"
        with self.assertRaises(ToolError) as ctx:
            self.invoker.run(self.cwd, _python(script), timeout=30)
        tail = ctx.exception.output_tail
        self.assertLessEqual(len(tail), 1024)
        self.assertTrue(tail.endswith("END"))

    def test_timeout_terminates_process(self):
        started = time.monotonic()
        with self.assertRaises(ToolTimeoutError) as ctx:
            self.invoker.run(self.cwd, _python("import time; time.sleep(60)"), timeout=0.5)
        self.assertLess(time.monotonic() - started, 15)
        self.assertEqual(ctx.exception.status_code, 504)

    def test_timeout_escalates_when_sigterm_is_ignored(self):
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "time.sleep(60)\n"
        )
        if sys.platform.startswith("win"):
            self.skipTest("POSIX signals only")
        started = time.monotonic()
        with self.assertRaises(ToolTimeoutError):
            self.invoker.run(self.cwd, _python(script), timeout=0.5)
        self.assertLess(time.monotonic() - started, 15)

    def test_cancel_event_stops_the_tool(self):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            with self.assertRaises(JobCancelledError):
                self.invoker.run(self.cwd, _python("import time; time.sleep(60)"), timeout=60, cancel_event=cancel)
        finally:
            timer.cancel()

    def test_interrupted_wait_terminates_the_tool(self):
        pid_file = self.cwd / "pid"
        script = "import os, time; open('pid', 'w').write(str(os.getpid())); time.sleep(30)"

        class _InterruptOnceStarted:
            def is_set(self):
                if pid_file.exists() and pid_file.read_text():
                    raise KeyboardInterrupt
                return False

        started = time.monotonic()
        with self.assertRaises(KeyboardInterrupt):
            self.invoker.run(self.cwd, _python(script), timeout=30, cancel_event=_InterruptOnceStarted())
        self.assertLess(time.monotonic() - started, 15)

        pid = int(pid_file.read_text())
        with self.assertRaises(ProcessLookupError):
            os.kill(pid, 0)

    def test_missing_program_raises_tool_error(self):
        with self.assertRaises(ToolError) as ctx:
            self.invoker.run(self.cwd, ("definitely-not-installed-tool-42", "-v"), timeout=5)
        self.assertIn("not installed", ctx.exception.message)

    def test_empty_command_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.invoker.run(self.cwd, (), timeout=5)


class TestTailBuffer(unittest.TestCase):
    def test_text_snapshots_while_pipe_is_still_open(self):
        read_fd, write_fd = os.pipe()
        tail = _TailBuffer(os.fdopen(read_fd, "rb"), limit=4)
        try:
            os.write(write_fd, b"partial")
            deadline = time.monotonic() + 5
            text = ""
            while text != "tial" and time.monotonic() < deadline:
                text = tail.text(timeout=0.05)
            self.assertEqual(text, "tial")
        finally:
            os.close(write_fd)
        self.assertEqual(tail.text(), "tial")
