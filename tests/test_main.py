"""Tests for the command-line entry point."""

import io
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

import main
from certagent.orchestrator import CycleReport, RenewalOutcome


def run_main(argv, environ=None):
    """Run main() with a controlled environment, returning (code, stdout, stderr)."""
    stdout, stderr = io.StringIO(), io.StringIO()
    with patch.dict("os.environ", environ or {}, clear=True):
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = main.main(argv)
    return code, stdout.getvalue(), stderr.getvalue()


class TestParseArguments(unittest.TestCase):

    def test_default_command(self):
        self.assertEqual(main.parse_arguments([]).command, "run")

    def test_flag_aliases(self):
        self.assertEqual(main.parse_arguments(["--once"]).command, "once")
        self.assertEqual(main.parse_arguments(["--version"]).command, "version")


class TestCommands(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.cert_dir = Path(self.tmp.name) / "certs"
        self.log_dir = Path(self.tmp.name) / "logs"
        self.environ = {
            "SERVER_IP": "127.0.0.1",
            "SERVICE_NAME": "test-cli",
            "CERT_DIR": str(self.cert_dir),
            "LOG_DIR": str(self.log_dir),
        }

    def test_version(self):
        code, out, _ = run_main(["version"])
        self.assertEqual(code, 0)
        self.assertIn("Simple Certificate Manager", out)
        self.assertIn("Features:", out)

    def test_version_needs_no_configuration(self):
        code, _, _ = run_main(["--version"], environ={})
        self.assertEqual(code, 0)

    def test_help(self):
        code, out, _ = run_main(["help"])
        self.assertEqual(code, 0)
        self.assertIn("Commands:", out)
        self.assertIn("Environment variables:", out)

    def test_unknown_command(self):
        code, out, err = run_main(["invalid-command"], environ=self.environ)
        self.assertEqual(code, 1)
        self.assertIn("Unknown command: invalid-command", err)
        self.assertIn("Commands:", out)

    def test_missing_identity_is_configuration_error(self):
        code, _, _ = run_main(["once"], environ={})
        self.assertEqual(code, 2)

    def test_validate(self):
        code, out, _ = run_main(["validate", "--no-color"], environ=self.environ)
        self.assertEqual(code, 0)
        self.assertIn("server_identity: 127.0.0.1", out)
        self.assertIn("service_name: test-cli", out)

    def test_threshold_above_validity_is_not_fatal(self):
        environ = dict(self.environ, DAYS_BEFORE_RENEWAL="20")
        code, out, _ = run_main(["validate", "--no-color"], environ=environ)
        self.assertEqual(code, 0)
        self.assertIn("days_before_renewal: 20", out)
        self.assertIn("every check will renew", out)

    @patch("main.shutil.which", return_value="/usr/bin/openssl")
    def test_health_missing_directories(self, mock_which):
        code, out, _ = run_main(["health"], environ=self.environ)
        self.assertEqual(code, 1)
        self.assertIn("Certificate directory not found", out)

    @patch("main.shutil.which", return_value="/usr/bin/openssl")
    def test_health_without_certificate(self, mock_which):
        self.cert_dir.mkdir()
        self.log_dir.mkdir()
        code, out, _ = run_main(["health"], environ=self.environ)
        self.assertEqual(code, 0)
        self.assertIn("No certificate", out)
        self.assertIn("Health check passed", out)

    @patch("main.RenewalOrchestrator")
    def test_once_failure_exit_code(self, mock_orchestrator):
        mock_orchestrator.return_value.run_once.return_value = CycleReport(
            outcome=RenewalOutcome.GENERATION_FAILED, message="no backend"
        )
        code, _, _ = run_main(["once", "--no-color"], environ=self.environ)
        self.assertEqual(code, 1)

    @patch("main.RenewalOrchestrator")
    def test_once_success_json(self, mock_orchestrator):
        mock_orchestrator.return_value.run_once.return_value = CycleReport(
            outcome=RenewalOutcome.SKIPPED, message="valid"
        )
        code, out, _ = run_main(["once", "--json", "--no-color"], environ=self.environ)
        self.assertEqual(code, 0)
        self.assertIn('"outcome": "skipped"', out)

    @patch("main.signal.signal")
    @patch("main.RenewalOrchestrator")
    def test_run_installs_signal_handlers(self, mock_orchestrator, mock_signal):
        code, _, _ = run_main(["run", "--no-color"], environ=self.environ)
        self.assertEqual(code, 0)
        mock_orchestrator.return_value.run_forever.assert_called_once_with()
        self.assertEqual(mock_signal.call_count, 2)


if __name__ == "__main__":
    unittest.main()
