import sys
import unittest

from stack_deployer.local import LocalSession, ToolProbe


class LocalSessionTests(unittest.TestCase):
    def test_captures_output_and_status(self) -> None:
        result = LocalSession().run([sys.executable, "-c", "import sys; print('out'); sys.exit(3)"])
        self.assertEqual(result.stdout, "out")
        self.assertEqual(result.exit_status, 3)
        self.assertFalse(result.ok)

    def test_stdin_is_passed_through(self) -> None:
        result = LocalSession().run(
            [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
            input_text="secret",
        )
        self.assertEqual(result.stdout, "SECRET")
        self.assertNotIn("secret", result.command)

    def test_missing_executable_is_a_failed_result(self) -> None:
        result = LocalSession().run(["stack-deployer-no-such-tool"])
        self.assertEqual(result.exit_status, -1)

    def test_timeout_is_a_failed_result(self) -> None:
        result = LocalSession().run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=1)
        self.assertFalse(result.ok)
        self.assertIn("timed out", result.stderr)

    def test_automation_env(self) -> None:
        result = LocalSession(env={"EXTRA": "1"}).run(
            [sys.executable, "-c", "import os; print(os.environ.get('TF_IN_AUTOMATION'), os.environ.get('EXTRA'))"]
        )
        self.assertEqual(result.stdout, "1 1")


class ToolProbeTests(unittest.TestCase):
    def test_reports_missing_tools(self) -> None:
        availability = ToolProbe().collect(["stack-deployer-no-such-tool"])
        self.assertFalse(availability.has("stack-deployer-no-such-tool"))
        self.assertEqual(availability.missing, ["stack-deployer-no-such-tool"])
