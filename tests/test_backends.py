"""Tests for certificate generation backends."""

import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from certagent.backends import (
    BackendResult,
    BackendStatus,
    GenerationBackend,
    GenerationBackendChain,
    GenerationError,
    GenerationRequest,
    OpenSSLBackend,
    StepCliBackend,
    default_backends,
)
from certagent.config_loader import RenewalConfig


class FakeBackend(GenerationBackend):
    """Backend that writes (or half-writes) files without a subprocess."""

    def __init__(self, name, status=BackendStatus.SUCCESS, write=("cert", "key"), raises=None):
        super().__init__()
        self.name = name
        self.status = status
        self.write = write
        self.raises = raises
        self.calls = 0

    def generate(self, request):
        self.calls += 1
        if "cert" in self.write:
            request.cert_path.write_text(f"cert from {self.name}")
        if "key" in self.write:
            request.key_path.write_text(f"key from {self.name}")
        if self.raises:
            raise self.raises
        return BackendResult(status=self.status, backend=self.name, message=f"{self.name} said so")


def make_request(cert_dir, identity="192.168.1.100", **overrides):
    config = RenewalConfig(server_identity=identity, service_name="api", cert_dir=str(cert_dir), **overrides)
    return GenerationRequest.from_config(config)


class TestGenerationRequest(unittest.TestCase):

    def test_from_config(self):
        request = make_request("/certs")
        self.assertEqual(request.subject, "192.168.1.100")
        self.assertEqual(request.san_entries, ["DNS:localhost", "IP:127.0.0.1", "IP:192.168.1.100"])
        self.assertEqual(request.cert_path, Path("/certs/api-new.crt"))
        self.assertEqual(request.key_path, Path("/certs/api-new.key"))
        self.assertEqual(request.validity_hours, 360)

    def test_raise_for_status(self):
        BackendResult(status=BackendStatus.SUCCESS, backend="step").raise_for_status()
        with self.assertRaises(GenerationError):
            BackendResult(status=BackendStatus.HARD_FAILURE, backend="none", message="boom").raise_for_status()


class TestStepCliBackend(unittest.TestCase):

    def test_self_signed_command(self):
        request = make_request("/certs")
        cmd = StepCliBackend().build_command("/usr/bin/step", request)
        self.assertEqual(cmd[:6], [
            "/usr/bin/step", "certificate", "create", "api-server",
            "/certs/api-new.crt", "/certs/api-new.key",
        ])
        self.assertIn("--subtle", cmd)
        self.assertEqual(cmd[cmd.index("--profile") + 1], "self-signed")
        self.assertEqual(cmd[cmd.index("--not-after") + 1], "360h")
        sans = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "--san"]
        self.assertEqual(sans, ["192.168.1.100", "localhost", "127.0.0.1"])
        for flag in ("--no-password", "--insecure", "--force"):
            self.assertIn(flag, cmd)

    def test_ca_signed_command(self):
        request = make_request("/certs", step_ca_cert="/ca/int.crt", step_ca_key="/ca/int.key")
        cmd = StepCliBackend().build_command("step", request)
        self.assertEqual(cmd[cmd.index("--profile") + 1], "leaf")
        self.assertEqual(cmd[cmd.index("--ca") + 1], "/ca/int.crt")
        self.assertEqual(cmd[cmd.index("--ca-key") + 1], "/ca/int.key")
        self.assertNotIn("--subtle", cmd)

    @patch("certagent.backends.shutil.which", return_value=None)
    def test_missing_executable_is_soft(self, mock_which):
        with tempfile.TemporaryDirectory() as tmp:
            result = StepCliBackend().generate(make_request(tmp))
        self.assertEqual(result.status, BackendStatus.SOFT_FAILURE)

    @patch("certagent.backends.subprocess.run")
    @patch("certagent.backends.shutil.which", return_value="/usr/bin/step")
    def test_zero_exit_without_files_is_soft(self, mock_which, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
        with tempfile.TemporaryDirectory() as tmp:
            result = StepCliBackend().generate(make_request(tmp))
        self.assertEqual(result.status, BackendStatus.SOFT_FAILURE)

    @patch("certagent.backends.subprocess.run")
    @patch("certagent.backends.shutil.which", return_value="/usr/bin/step")
    def test_non_zero_exit_is_soft(self, mock_which, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="bad profile")
        with tempfile.TemporaryDirectory() as tmp:
            result = StepCliBackend().generate(make_request(tmp))
        self.assertEqual(result.status, BackendStatus.SOFT_FAILURE)
        self.assertIn("bad profile", result.message)


class TestOpenSSLBackend(unittest.TestCase):

    def test_subject(self):
        request = make_request("/certs")
        self.assertEqual(OpenSSLBackend().build_subject(request), "/C=KR/O=api Service/CN=192.168.1.100")

    def test_config_contains_sans(self):
        request = make_request("/certs", identity="api.example.com")
        config = OpenSSLBackend().build_config(request)
        self.assertIn("[v3_req]", config)
        self.assertIn("basicConstraints = CA:FALSE", config)
        self.assertIn("subjectAltName = DNS:localhost,IP:127.0.0.1,DNS:api.example.com", config)

    def test_command(self):
        request = make_request("/certs")
        cmd = OpenSSLBackend().build_command("openssl", request, "/tmp/x.cnf")
        self.assertEqual(cmd[:4], ["openssl", "req", "-x509", "-newkey"])
        self.assertEqual(cmd[cmd.index("-days") + 1], "15")
        self.assertEqual(cmd[cmd.index("-keyout") + 1], "/certs/api-new.key")
        self.assertEqual(cmd[cmd.index("-out") + 1], "/certs/api-new.crt")
        self.assertEqual(cmd[cmd.index("-config") + 1], "/tmp/x.cnf")
        self.assertIn("-nodes", cmd)

    @patch("certagent.backends.subprocess.run")
    @patch("certagent.backends.shutil.which", return_value="/usr/bin/openssl")
    def test_config_file_removed_after_run(self, mock_which, mock_run):
        seen = {}

        def fake_run(cmd, **kwargs):
            config_path = cmd[cmd.index("-config") + 1]
            seen["path"] = config_path
            seen["content"] = Path(config_path).read_text()
            Path(cmd[cmd.index("-out") + 1]).write_text("cert")
            Path(cmd[cmd.index("-keyout") + 1]).write_text("key")
            return subprocess.CompletedProcess(args=cmd, returncode=0, stdout="", stderr="")

        mock_run.side_effect = fake_run
        with tempfile.TemporaryDirectory() as tmp:
            result = OpenSSLBackend().generate(make_request(tmp))

        self.assertTrue(result.succeeded)
        self.assertIn("subjectAltName", seen["content"])
        self.assertFalse(Path(seen["path"]).exists())


class TestGenerationBackendChain(unittest.TestCase):
    """Ordering, fallback and cleanup."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.request = make_request(self.tmp.name)

    def test_default_order(self):
        self.assertEqual([b.name for b in default_backends()], ["step", "openssl"])

    def test_first_success_wins(self):
        first = FakeBackend("step")
        second = FakeBackend("openssl")
        result = GenerationBackendChain([first, second]).generate(self.request)
        self.assertTrue(result.succeeded)
        self.assertEqual(result.backend, "step")
        self.assertEqual(second.calls, 0)
        self.assertEqual(self.request.cert_path.read_text(), "cert from step")

    def test_soft_failure_falls_back(self):
        first = FakeBackend("step", status=BackendStatus.SOFT_FAILURE, write=("cert",))
        second = FakeBackend("openssl")
        result = GenerationBackendChain([first, second]).generate(self.request)
        self.assertTrue(result.succeeded)
        self.assertEqual(result.backend, "openssl")
        self.assertEqual(result.attempts, ["step", "openssl"])
        self.assertEqual(self.request.cert_path.read_text(), "cert from openssl")

    def test_os_error_is_soft(self):
        first = FakeBackend("step", raises=OSError("exec format error"), write=())
        second = FakeBackend("openssl")
        result = GenerationBackendChain([first, second]).generate(self.request)
        self.assertEqual(result.backend, "openssl")

    def test_hard_failure_stops_chain(self):
        first = FakeBackend("step", status=BackendStatus.HARD_FAILURE)
        second = FakeBackend("openssl")
        result = GenerationBackendChain([first, second]).generate(self.request)
        self.assertEqual(result.status, BackendStatus.HARD_FAILURE)
        self.assertEqual(second.calls, 0)
        self.assertFalse(self.request.cert_path.exists())

    def test_all_fail_leaves_no_partial_output(self):
        first = FakeBackend("step", status=BackendStatus.SOFT_FAILURE, write=("cert",))
        second = FakeBackend("openssl", status=BackendStatus.SOFT_FAILURE, write=("key",))
        result = GenerationBackendChain([first, second]).generate(self.request)
        self.assertEqual(result.status, BackendStatus.HARD_FAILURE)
        self.assertEqual(result.backend, "none")
        self.assertIn("step, openssl", result.message)
        self.assertFalse(self.request.cert_path.exists())
        self.assertFalse(self.request.key_path.exists())

    def test_stale_candidates_cleared_before_attempt(self):
        self.request.cert_path.write_text("stale")
        self.request.key_path.write_text("stale")
        half = FakeBackend("step", status=BackendStatus.SOFT_FAILURE, write=())
        GenerationBackendChain([half]).generate(self.request)
        self.assertFalse(self.request.cert_path.exists())


if __name__ == "__main__":
    unittest.main()
