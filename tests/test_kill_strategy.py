"""Tests for kill strategies and process tree termination."""

import subprocess
import sys
import time
import unittest
from unittest import mock

import psutil
from fake_handle import FakeHandle

from managed_process.kill_strategy import SignalKillStrategy, TreeKillStrategy, select_kill_strategy
from managed_process.process_utils import get_process_tree_info, kill_process_tree


class ExplodingHandle(FakeHandle):
    def kill(self) -> None:
        raise ProcessLookupError("already gone")


class TestSignalKillStrategy(unittest.TestCase):
    def test_kills_handle(self):
        handle = FakeHandle(pid=1234)
        SignalKillStrategy().terminate(handle)
        self.assertEqual(handle.kill_calls, 1)

    def test_none_handle_is_noop(self):
        SignalKillStrategy().terminate(None)

    def test_kill_failure_is_swallowed(self):
        SignalKillStrategy().terminate(ExplodingHandle(pid=1234))


class TestTreeKillStrategy(unittest.TestCase):
    def test_kills_tree_and_handle(self):
        handle = FakeHandle(pid=4321)
        with mock.patch("managed_process.kill_strategy.kill_process_tree") as tree_kill:
            TreeKillStrategy().terminate(handle)
        tree_kill.assert_called_once_with(4321)
        self.assertEqual(handle.kill_calls, 1)

    def test_tree_kill_failure_is_swallowed(self):
        handle = FakeHandle(pid=4321)
        with mock.patch(
            "managed_process.kill_strategy.kill_process_tree",
            side_effect=psutil.AccessDenied(4321),
        ):
            TreeKillStrategy().terminate(handle)
        self.assertEqual(handle.kill_calls, 1)

    def test_unspawned_handle_skips_tree_kill(self):
        handle = FakeHandle(pid=None)
        with mock.patch("managed_process.kill_strategy.kill_process_tree") as tree_kill:
            TreeKillStrategy().terminate(handle)
        tree_kill.assert_not_called()
        self.assertEqual(handle.kill_calls, 1)


class TestSelectKillStrategy(unittest.TestCase):
    def test_windows_uses_tree_kill(self):
        self.assertIsInstance(select_kill_strategy("win32"), TreeKillStrategy)

    def test_posix_uses_signal_kill(self):
        strategy = select_kill_strategy("linux")
        self.assertIsInstance(strategy, SignalKillStrategy)
        self.assertNotIsInstance(strategy, TreeKillStrategy)
        self.assertNotIsInstance(select_kill_strategy("darwin"), TreeKillStrategy)


class TestKillProcessTree(unittest.TestCase):
    """Real process tests for psutil based tree termination."""

    def test_already_exited_process_is_noop(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
        proc.wait(timeout=10)
        kill_process_tree(proc.pid)

    def test_kills_parent_and_descendants(self):
        script = (
            "import subprocess, sys, time; "
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)']); "
            "time.sleep(30)"
        )
        proc = subprocess.Popen([sys.executable, "-c", script])  # noqa: S603
        try:
            parent = psutil.Process(proc.pid)
            deadline = time.time() + 10
            children = parent.children(recursive=True)
            while not children and time.time() < deadline:
                time.sleep(0.05)
                children = parent.children(recursive=True)
            self.assertTrue(children, "grandchild never started")

            kill_process_tree(proc.pid)

            proc.wait(timeout=10)
            _, alive = psutil.wait_procs(children, timeout=10)
            self.assertEqual(alive, [])
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    def test_tree_info_for_missing_process(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
        proc.wait(timeout=10)
        self.assertIn(str(proc.pid), get_process_tree_info(proc.pid))


if __name__ == "__main__":
    unittest.main()
