import socket
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from dbmonitor.monitoring import health_probe

from fakes import FakeClock, FakeRunner, make_context, result


def sequence(*outcomes):
    """mysql responses in order: True for success, a string for an error."""
    queue = list(outcomes)

    def _respond(_argv):
        outcome = queue.pop(0)
        if outcome is True:
            return result("1\n")
        return result("", 1, outcome)

    return _respond


class BackoffTest(unittest.TestCase):
    def test_backoff_doubles_from_base_delay(self):
        for attempt in range(1, 6):
            self.assertEqual(health_probe.backoff_delay(attempt, 5), 5 * 2 ** (attempt - 1))

    def test_first_delay_is_base(self):
        self.assertEqual(health_probe.backoff_delay(1, 2.5), 2.5)


class ProbeTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        patcher = mock.patch.object(health_probe, "check_transport", return_value=(True, 2, None))
        self.transport = patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)

    def test_success_on_third_attempt_sleeps_with_backoff(self):
        runner = FakeRunner({("mysql",): sequence("denied", "denied", True)})
        clock = FakeClock()
        ctx = make_context(self.tmp, runner, clock, max_retries=3, retry_delay=5)
        outcome = health_probe.probe(ctx)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.attempt_count, 3)
        self.assertEqual(clock.sleeps, [5, 10])

    def test_exhaustion_returns_failure_and_writes_snapshot(self):
        runner = FakeRunner({("mysql",): sequence("err1", "err2", "Access denied for user 'wp'")})
        clock = FakeClock()
        ctx = make_context(self.tmp, runner, clock, max_retries=3, retry_delay=1)
        outcome = health_probe.probe(ctx)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.attempt_count, 3)
        self.assertEqual(outcome.category, health_probe.HANDSHAKE)
        self.assertIn("Access denied", outcome.last_error)
        self.assertEqual(clock.sleeps, [1, 2])
        snapshot = ctx.state.read_last_error()
        self.assertEqual(snapshot["site"], "example.com")
        self.assertEqual(snapshot["attempts"], 3)
        self.assertIn("Access denied", snapshot["error"])

    def test_single_retry_never_sleeps(self):
        runner = FakeRunner({("mysql",): sequence("down")})
        clock = FakeClock()
        ctx = make_context(self.tmp, runner, clock, max_retries=1)
        outcome = health_probe.probe(ctx)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.attempt_count, 1)
        self.assertEqual(clock.sleeps, [])
        self.assertEqual(len(runner.calls), 1)

    def test_success_clears_previous_snapshot(self):
        runner = FakeRunner({("mysql",): sequence(True)})
        ctx = make_context(self.tmp, runner)
        ctx.state.write_last_error({"time": "2026-01-01 00:00:00", "error": "boom"})
        outcome = health_probe.probe(ctx)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.attempt_count, 1)
        self.assertEqual(outcome.recovered_from["error"], "boom")
        self.assertIsNone(ctx.state.read_last_error())

    def test_follow_up_check_leaves_snapshot_alone(self):
        ctx = make_context(self.tmp, FakeRunner({("mysql",): sequence("still down", True)}), max_retries=1)
        snapshot = {"time": "2026-01-01 00:00:00", "error": "Connection refused", "attempts": 3}
        ctx.state.write_last_error(snapshot)
        failed = health_probe.probe(ctx, persist=False)
        self.assertFalse(failed.success)
        self.assertEqual(ctx.state.read_last_error(), snapshot)
        passed = health_probe.probe(ctx, persist=False)
        self.assertTrue(passed.success)
        self.assertIsNone(passed.recovered_from)
        self.assertEqual(ctx.state.read_last_error(), snapshot)

    def test_transport_failure_skips_handshake(self):
        self.transport.return_value = (False, 3001, "timed out")
        runner = FakeRunner({("mysql",): sequence(True)})
        ctx = make_context(self.tmp, runner)
        outcome = health_probe.probe(ctx)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.category, health_probe.TRANSPORT)
        self.assertEqual(runner.calls, [])
        self.assertEqual(ctx.state.read_last_error()["type"], "transport")

    def test_password_passed_through_environment(self):
        runner = FakeRunner({("mysql",): sequence(True)})
        ctx = make_context(self.tmp, runner)
        health_probe.probe(ctx)
        self.assertEqual(runner.envs[0], {"MYSQL_PWD": "secret"})
        self.assertNotIn("secret", " ".join(runner.calls[0]))

    def test_missing_client_is_a_handshake_failure(self):
        ctx = make_context(self.tmp, FakeRunner(), max_retries=1)
        outcome = health_probe.probe(ctx)
        self.assertFalse(outcome.success)
        self.assertIn("command not found", outcome.last_error)


class TransportTest(unittest.TestCase):
    def test_check_transport_reports_refused_port(self):
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        ok, _latency, error = health_probe.check_transport("127.0.0.1", port, 1)
        self.assertFalse(ok)
        self.assertTrue(error)

    def test_check_transport_accepts_listening_port(self):
        with socket.socket() as server:
            server.bind(("127.0.0.1", 0))
            server.listen(1)
            ok, latency, error = health_probe.check_transport("127.0.0.1", server.getsockname()[1], 1)
        self.assertTrue(ok)
        self.assertIsNone(error)
        self.assertGreaterEqual(latency, 0)


if __name__ == "__main__":
    unittest.main()
