import tempfile
import textwrap
import unittest
from pathlib import Path

from dbmonitor.lib.system_commands import CommandUnavailable
from dbmonitor.monitoring import resource_checks as checks

from fakes import FakeClock, FakeRunner, make_context, result

DF_91 = textwrap.dedent(
    """\
    Filesystem     1024-blocks     Used Available Capacity Mounted on
    /dev/sda1        102400000 93184000   9216000      91% /var/lib/mysql
    """
)
DF_90 = DF_91.replace("91%", "90%")
MEMINFO = textwrap.dedent(
    """\
    MemTotal:        1000000 kB
    MemFree:           20000 kB
    MemAvailable:      50000 kB
    Buffers:           10000 kB
    Cached:            30000 kB
    """
)
JOURNAL = textwrap.dedent(
    """\
    Failed password for root from 203.0.113.9 port 51122 ssh2
    Failed password for invalid user admin from 203.0.113.9 port 51123 ssh2
    Failed password for root from 203.0.113.9 port 51124 ssh2
    Accepted publickey for deploy from 198.51.100.4 port 40000 ssh2
    Failed password for root from 198.51.100.7 port 41000 ssh2
    """
)


class ComparisonTest(unittest.TestCase):
    def test_disk_threshold_is_strict(self):
        self.assertIsNotNone(checks.evaluate_disk("/var/lib/mysql", 91, 90))
        self.assertIsNone(checks.evaluate_disk("/var/lib/mysql", 90, 90))

    def test_load_and_memory(self):
        self.assertIsNotNone(checks.evaluate_load(4.5, 4.0))
        self.assertIsNone(checks.evaluate_load(4.0, 4.0))
        self.assertIsNotNone(checks.evaluate_memory(95.0, 90))
        self.assertIsNone(checks.evaluate_memory(90.0, 90))

    def test_connection_pool(self):
        alert = checks.evaluate_connection_pool(130, 151, 80)
        self.assertIsNotNone(alert)
        self.assertIn("130/151", alert.title)
        self.assertIsNone(checks.evaluate_connection_pool(120, 151, 80))
        self.assertIsNone(checks.evaluate_connection_pool(5, 0, 80))

    def test_service_and_smart_are_binary(self):
        self.assertIsNone(checks.evaluate_service("cron", "active"))
        self.assertIsNotNone(checks.evaluate_service("cron", "inactive"))
        self.assertIsNone(checks.evaluate_smart("/dev/sda", "PASSED"))
        self.assertIsNone(checks.evaluate_smart("/dev/sdb", "OK"))
        self.assertEqual(checks.evaluate_smart("/dev/sda", "FAILED!").severity, "CRITICAL")

    def test_config_hash_first_observation_is_silent(self):
        changed, merged = checks.evaluate_config_hashes({}, {"my.cnf": "a"})
        self.assertEqual(changed, [])
        self.assertEqual(merged, {"my.cnf": "a"})
        changed, _ = checks.evaluate_config_hashes({"my.cnf": "a"}, {"my.cnf": "b", "wp-config.php": "c"})
        self.assertEqual(changed, ["my.cnf"])

    def test_login_failures_threshold_is_inclusive(self):
        counts = checks.count_login_failures(JOURNAL.splitlines())
        self.assertEqual(counts, {"203.0.113.9": 3, "198.51.100.7": 1})
        self.assertEqual(checks.evaluate_login_failures(counts, 3), [("203.0.113.9", 3)])

    def test_parsers(self):
        self.assertEqual(checks.parse_df_percent(DF_91), 91)
        with self.assertRaises(checks.SampleError):
            checks.parse_df_percent("garbage")
        self.assertEqual(checks.parse_mysql_variable("max_connections\t151\n"), 151)
        self.assertEqual(
            checks.parse_smart_status("SMART overall-health self-assessment test result: PASSED\n"),
            "PASSED",
        )
        self.assertEqual(checks.count_upgradable(
            "Listing...\n"
            "mysql-server/jammy-security 8.0.36 amd64 [upgradable from: 8.0.35]\n"
            "curl/jammy-updates 7.81.0 amd64 [upgradable from: 7.81.0-1]\n"
        ), (2, 1))

    def test_memory_fallback_without_memavailable(self):
        info = {"MemTotal": 1000, "MemFree": 100, "Buffers": 50, "Cached": 50}
        self.assertAlmostEqual(checks.memory_usage_percent(info), 80.0)


class SamplerTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp = Path(self._tmp.name)

    def test_disk_alert_and_missing_df(self):
        ctx = make_context(self.tmp, FakeRunner({("df",): result(DF_91)}))
        alerts = checks.check_disk(ctx)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].category, "disk")
        ctx = make_context(self.tmp, FakeRunner())
        self.assertEqual(checks.check_disk(ctx), [])
        self.assertIn("WARNING disk /var/lib/mysql check skipped", (self.tmp / "db-monitor-log.txt").read_text())

    def test_disk_at_threshold_is_quiet(self):
        ctx = make_context(self.tmp, FakeRunner({("df",): result(DF_90)}))
        self.assertEqual(checks.check_disk(ctx), [])

    def test_cpu_uses_one_minute_load(self):
        ctx = make_context(self.tmp, cpu_threshold_load_avg=2.0)
        self.assertEqual(len(checks.check_cpu(ctx, loadavg=lambda: (2.5, 0.1, 0.1))), 1)
        self.assertEqual(checks.check_cpu(ctx, loadavg=lambda: (1.0, 9.0, 9.0)), [])

    def test_memory_reads_meminfo(self):
        meminfo = self.tmp / "meminfo"
        meminfo.write_text(MEMINFO, encoding="utf-8")
        ctx = make_context(self.tmp, mem_threshold_percent=90)
        alerts = checks.check_memory(ctx, meminfo)
        self.assertEqual(len(alerts), 1)
        self.assertIn("95.0%", alerts[0].title)
        self.assertEqual(checks.check_memory(ctx, self.tmp / "missing"), [])

    def test_connection_pool_queries_mysql(self):
        def respond(argv):
            if "max_connections" in argv[-1]:
                return result("max_connections\t100\n")
            return result("Threads_connected\t85\n")

        ctx = make_context(self.tmp, FakeRunner({("mysql",): respond}))
        alerts = checks.check_connection_pool(ctx)
        self.assertEqual(len(alerts), 1)
        self.assertIn("85/100", alerts[0].title)

    def test_connection_pool_failure_is_fail_open(self):
        ctx = make_context(self.tmp, FakeRunner({("mysql",): result("", 1, "Access denied")}))
        self.assertEqual(checks.check_connection_pool(ctx), [])

    def test_dependencies(self):
        runner = FakeRunner(
            {
                ("systemctl", "is-active", "cron"): result("active\n"),
                ("systemctl", "is-active", "php-fpm"): result("inactive\n", 3),
            }
        )
        ctx = make_context(self.tmp, runner, dependencies=("cron", "php-fpm"))
        alerts = checks.check_dependencies(ctx)
        self.assertEqual([a.title for a in alerts], ["Service php-fpm is not active"])

    def test_smart(self):
        runner = FakeRunner(
            {
                ("smartctl", "-H", "/dev/sda"): result("SMART overall-health self-assessment test result: FAILED!\n", 8),
                ("smartctl", "-H", "/dev/sdb"): result("no health line here\n", 2),
            }
        )
        ctx = make_context(self.tmp, runner, smart_devices=("/dev/sda", "/dev/sdb"))
        alerts = checks.check_smart(ctx)
        self.assertEqual(len(alerts), 1)
        self.assertIn("/dev/sda", alerts[0].title)

    def test_config_integrity_across_runs(self):
        mycnf = self.tmp / "my.cnf"
        wp = self.tmp / "wp-config.php"
        mycnf.write_text("[mysqld]\nmax_connections=151\n", encoding="utf-8")
        wp.write_text("<?php define('DB_NAME', 'wp');", encoding="utf-8")
        ctx = make_context(self.tmp, watched_configs=(mycnf, wp))
        self.assertEqual(checks.check_config_integrity(ctx), [])
        self.assertEqual(set(ctx.state.load_hashes()), {"my.cnf", "wp-config.php"})
        self.assertEqual(checks.check_config_integrity(ctx), [])
        mycnf.write_text("[mysqld]\nmax_connections=500\n", encoding="utf-8")
        alerts = checks.check_config_integrity(ctx)
        self.assertEqual([a.title for a in alerts], ["Config my.cnf changed"])
        self.assertEqual(checks.check_config_integrity(ctx), [])

    def test_ssh_scan_window_advances_and_bans(self):
        clock = FakeClock()
        runner = FakeRunner(
            {
                ("journalctl",): result(JOURNAL),
                ("fail2ban-client",): result("1\n"),
            }
        )
        ctx = make_context(self.tmp, runner, clock, login_fail_threshold=3, auto_block_ip=True)
        alerts = checks.check_ssh_bruteforce(ctx)
        self.assertEqual(len(alerts), 1)
        self.assertIn("203.0.113.9", alerts[0].title)
        self.assertIn(["fail2ban-client", "set", "sshd", "banip", "203.0.113.9"], runner.calls)
        since = runner.calls[0][runner.calls[0].index("--since") + 1]
        self.assertEqual(since, f"@{int(clock.now - 600)}")
        self.assertEqual(ctx.state.last_security_scan(), clock.now)

        first_end = clock.now
        clock.now += 300
        runner.responses[("journalctl",)] = result("")
        self.assertEqual(checks.check_ssh_bruteforce(ctx), [])
        since = runner.calls[-1][runner.calls[-1].index("--since") + 1]
        self.assertEqual(since, f"@{int(first_end)}")

    def test_ssh_scan_advances_even_when_journalctl_missing(self):
        clock = FakeClock()
        ctx = make_context(self.tmp, FakeRunner(), clock)
        self.assertEqual(checks.check_ssh_bruteforce(ctx), [])
        self.assertEqual(ctx.state.last_security_scan(), clock.now)

    def test_package_updates_only_when_enabled(self):
        listing = "Listing...\nmysql-server/jammy-security 8.0.36 amd64 [upgradable from: 8.0.35]\n"
        runner = FakeRunner({("apt",): result(listing)})
        ctx = make_context(self.tmp, runner)
        self.assertEqual(checks.check_package_updates(ctx), [])
        self.assertEqual(runner.calls, [])
        ctx = make_context(self.tmp, runner, check_package_updates=True)
        alerts = checks.check_package_updates(ctx)
        self.assertEqual(alerts[0].severity, "WARNING")


class RunChecksTest(unittest.TestCase):
    def test_repeated_runs_produce_identical_alerts(self):
        with tempfile.TemporaryDirectory() as tmp:
            runner = FakeRunner(
                {
                    ("df",): result(DF_91),
                    ("systemctl", "is-active"): result("failed\n", 3),
                    ("journalctl",): CommandUnavailable("journalctl: command not found"),
                }
            )
            ctx = make_context(Path(tmp), runner)
            selected = [(name, fn) for name, fn in checks.CHECKS if name in {"disk", "dependency", "ssh", "config"}]
            first = [a.title for a in checks.run_checks(ctx, selected)]
            second = [a.title for a in checks.run_checks(ctx, selected)]
            self.assertEqual(first, second)
            self.assertEqual(first, ["Disk usage /var/lib/mysql at 91%", "Service cron is not active"])
            self.assertEqual(len(ctx.alerts.sent), 4)


if __name__ == "__main__":
    unittest.main()
