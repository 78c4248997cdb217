import sys
import unittest

from dbmonitor.lib.system_commands import CommandRunner, CommandUnavailable


class CommandRunnerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CommandRunner(timeout=10)

    def test_captures_output_and_exit_code(self) -> None:
        result = self.runner.run([sys.executable, "-c", "import sys; print('out'); sys.stderr.write('err'); sys.exit(3)"])
        self.assertFalse(result.ok)
        self.assertEqual(result.returncode, 3)
        self.assertEqual(result.stdout.strip(), "out")
        self.assertEqual(result.output, "out\nerr")

    def test_env_is_merged_into_parent_environment(self) -> None:
        script = "import os; print(os.environ['MYSQL_PWD'], bool(os.environ.get('PATH')))"
        result = self.runner.run([sys.executable, "-c", script], env={"MYSQL_PWD": "secret"})
        self.assertEqual(result.stdout.split(), ["secret", "True"])

    def test_missing_command(self) -> None:
        with self.assertRaises(CommandUnavailable) as cm:
            self.runner.run(["db-monitor-no-such-binary"])
        self.assertIn("command not found", str(cm.exception))
        self.assertFalse(self.runner.available("db-monitor-no-such-binary"))

    def test_timeout(self) -> None:
        with self.assertRaises(CommandUnavailable) as cm:
            self.runner.run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=1)
        self.assertIn("timed out", str(cm.exception))


if __name__ == "__main__":
    unittest.main()
