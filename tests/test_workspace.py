import os
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from media_transcoder.core.exceptions import ResourceError
from media_transcoder.pipeline.workspace import WORKSPACE_PREFIX, WorkspaceManager, new_job_id


class TestWorkspaceManager(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "workspaces"
        self.manager = WorkspaceManager(self.root)

    def tearDown(self):
        self._tmp.cleanup()

    def test_acquire_creates_private_directory_under_root(self):
        workspace = self.manager.acquire()
        self.assertTrue(workspace.path.is_dir())
        self.assertEqual(workspace.path.parent, self.root)
        self.assertTrue(workspace.path.name.startswith(WORKSPACE_PREFIX))
        if os.name == "posix":
            self.assertEqual(workspace.path.stat().st_mode & 0o777, 0o700)

    def test_release_removes_contents_and_is_idempotent(self):
        workspace = self.manager.acquire()
        (workspace.path / "nested").mkdir()
        workspace.path_for("a.bin").write_bytes(b"x")
        (workspace.path / "nested" / "b.bin").write_bytes(b"y")

        self.manager.release(workspace)
        self.assertFalse(workspace.path.exists())
        self.manager.release(workspace)
        self.assertTrue(workspace.released)

    def test_scope_releases_on_exception(self):
        with self.assertRaises(RuntimeError):
            with self.manager.scope() as workspace:
                path = workspace.path
                raise RuntimeError("boom")
        self.assertFalse(path.exists())

    def test_concurrent_acquire_yields_distinct_paths(self):
        paths = []
        lock = threading.Lock()

        def _grab():
            for _ in range(20):
                ws = self.manager.acquire()
                with lock:
                    paths.append(ws.path)

        threads = [threading.Thread(target=_grab) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(paths), 160)
        self.assertEqual(len(set(paths)), 160)

    def test_existing_directory_is_never_reused(self):
        self.root.mkdir(parents=True)
        taken = self.root / f"{WORKSPACE_PREFIX}taken"
        taken.mkdir()
        marker = taken / "keep.txt"
        marker.write_text("mine")

        ids = iter(["taken", "fresh"])
        with patch("media_transcoder.pipeline.workspace.new_job_id", side_effect=lambda: next(ids)):
            workspace = self.manager.acquire()

        self.assertEqual(workspace.job_id, "fresh")
        self.assertEqual(marker.read_text(), "mine")

    def test_unwritable_root_raises_resource_error(self):
        blocker = Path(self._tmp.name) / "file"
        blocker.write_text("not a directory")
        manager = WorkspaceManager(blocker / "sub")
        with self.assertRaises(ResourceError):
            manager.acquire()

    def test_sweep_stale_removes_only_old_workspaces(self):
        old = self.manager.acquire()
        fresh = self.manager.acquire()
        unrelated = self.root / "keep-me"
        unrelated.mkdir()

        past = time.time() - 7200
        os.utime(old.path, (past, past))
        os.utime(unrelated, (past, past))

        removed = self.manager.sweep_stale(max_age_seconds=3600)
        self.assertEqual(removed, 1)
        self.assertFalse(old.path.exists())
        self.assertTrue(fresh.path.exists())
        self.assertTrue(unrelated.exists())

    def test_sweep_stale_without_root_is_noop(self):
        self.assertEqual(WorkspaceManager(self.root / "missing").sweep_stale(1), 0)


def test_job_ids_are_unique():
    ids = {new_job_id() for _ in range(1000)}
    assert len(ids) == 1000
