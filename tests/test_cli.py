"""Test command line interface (CLI)."""

import json
import subprocess
import sys
import unittest

from managed_process.capture import CaptureResult
from managed_process.cli import EXIT_SPAWN_ERROR, EXIT_TIMEOUT, exit_status


def run_cli(*args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        [sys.executable, "-m", "managed_process.cli", *args],
        capture_output=True,
        text=True,
        check=False,
        timeout=60,
    )


class TestCLI(unittest.TestCase):
    """Test command line interface functionality."""

    def test_imports(self) -> None:
        result = run_cli()
        self.assertEqual(result.returncode, 0)

    def test_runs_command_and_prints_json(self) -> None:
        result = run_cli("--", sys.executable, "-c", "print('hello')")
        self.assertEqual(result.returncode, 0, result.stderr)
        payload = json.loads(result.stdout)
        self.assertEqual(payload["exit_code"], 0)
        self.assertEqual(payload["stdout"].strip(), "hello")
        self.assertFalse(payload["timed_out"])

    def test_timeout_exit_status(self) -> None:
        result = run_cli("--timeout-ms", "200", "--", sys.executable, "-c", "import time; time.sleep(10)")
        self.assertEqual(result.returncode, EXIT_TIMEOUT)
        self.assertTrue(json.loads(result.stdout)["timed_out"])


class TestExitStatus(unittest.TestCase):
    def test_mapping(self) -> None:
        ok = CaptureResult(exit_code=3, stdout="", stderr="", error=None, timed_out=False)
        timed_out = CaptureResult(exit_code=None, stdout="", stderr="", error="timeout", timed_out=True)
        failed = CaptureResult(exit_code=None, stdout="", stderr="", error="no such file", timed_out=False)
        self.assertEqual(exit_status(ok), 3)
        self.assertEqual(exit_status(timed_out), EXIT_TIMEOUT)
        self.assertEqual(exit_status(failed), EXIT_SPAWN_ERROR)


if __name__ == "__main__":
    unittest.main()
