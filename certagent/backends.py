"""
Certificate generation backends.

Each backend wraps an external executable that writes a fresh key and
certificate to the candidate paths. Backends are tried in a fixed order by
GenerationBackendChain: Step CLI first, then OpenSSL as the self-contained
fallback.
"""

import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from .config_loader import RenewalConfig
from .helpers import build_san_entries, remove_if_exists, san_values
from .logger import get_logger


class GenerationError(Exception):
    """Raised when no backend could produce a certificate."""
    pass


class BackendStatus(Enum):
    """Outcome of one generation attempt."""
    SUCCESS = "success"
    SOFT_FAILURE = "soft_failure"   # try the next backend
    HARD_FAILURE = "hard_failure"   # abort this cycle


@dataclass
class GenerationRequest:
    """Everything a backend needs to produce a candidate pair."""
    service_name: str
    subject: str
    san_entries: List[str]
    validity_days: int
    cert_path: Path
    key_path: Path
    ca_cert: Optional[str] = None
    ca_key: Optional[str] = None

    @classmethod
    def from_config(cls, config: RenewalConfig) -> "GenerationRequest":
        return cls(
            service_name=config.service_name,
            subject=config.server_identity,
            san_entries=build_san_entries(config.server_identity),
            validity_days=config.cert_validity_days,
            cert_path=config.candidate_cert_file,
            key_path=config.candidate_key_file,
            ca_cert=config.step_ca_cert,
            ca_key=config.step_ca_key,
        )

    @property
    def validity_hours(self) -> int:
        return self.validity_days * 24

    def outputs_exist(self) -> bool:
        return self.cert_path.is_file() and self.key_path.is_file()

    def clear_outputs(self) -> None:
        """Remove any files at the candidate paths."""
        remove_if_exists(self.cert_path)
        remove_if_exists(self.key_path)


@dataclass
class BackendResult:
    """Result of a generation attempt (or of the whole chain)."""
    status: BackendStatus
    backend: str
    message: str = ""
    attempts: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == BackendStatus.SUCCESS

    def raise_for_status(self) -> None:
        """Raise GenerationError unless the attempt succeeded."""
        if not self.succeeded:
            raise GenerationError(self.message or f"{self.backend} failed")


class GenerationBackend(ABC):
    """A single way of producing a key/certificate pair."""

    name: str = "backend"

    def __init__(self):
        self.logger = get_logger()

    @abstractmethod
    def generate(self, request: GenerationRequest) -> BackendResult:
        """
        Write a key and certificate to the request's candidate paths.

        Args:
            request: Subject, SANs, validity and output paths

        Returns:
            BackendResult; failures are reported, not raised
        """
        pass

    def _run(self, cmd: Sequence[str]) -> subprocess.CompletedProcess:
        self.logger.debug(f"Running: {' '.join(cmd)}")
        return subprocess.run(list(cmd), capture_output=True, text=True)

    def _finish(
        self,
        request: GenerationRequest,
        result: subprocess.CompletedProcess,
    ) -> BackendResult:
        """Map a finished process to a BackendResult."""
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            return BackendResult(
                status=BackendStatus.SOFT_FAILURE,
                backend=self.name,
                message=f"exit code {result.returncode}: {stderr}",
            )

        if not request.outputs_exist():
            return BackendResult(
                status=BackendStatus.SOFT_FAILURE,
                backend=self.name,
                message="exited successfully but did not write both files",
            )

        return BackendResult(status=BackendStatus.SUCCESS, backend=self.name)


class StepCliBackend(GenerationBackend):
    """Generate the leaf certificate with the smallstep ``step`` CLI."""

    name = "step"

    def build_command(self, step_path: str, request: GenerationRequest) -> List[str]:
        cmd = [
            step_path, "certificate", "create",
            f"{request.service_name}-server",
            str(request.cert_path),
            str(request.key_path),
        ]

        if request.ca_cert and request.ca_key:
            cmd.extend([
                "--profile", "leaf",
                "--ca", request.ca_cert,
                "--ca-key", request.ca_key,
            ])
        else:
            # step refuses self-signed leaf material without --subtle
            cmd.extend(["--profile", "self-signed", "--subtle"])

        cmd.extend(["--not-after", f"{request.validity_hours}h"])

        sans = [request.subject] + [
            v for v in san_values(request.san_entries) if v != request.subject
        ]
        for san in sans:
            cmd.extend(["--san", san])

        cmd.extend(["--no-password", "--insecure", "--force"])
        return cmd

    def generate(self, request: GenerationRequest) -> BackendResult:
        step_path = shutil.which("step")
        if not step_path:
            return BackendResult(
                status=BackendStatus.SOFT_FAILURE,
                backend=self.name,
                message="step CLI not found",
            )

        self.logger.debug("Generating certificate with Step CLI")
        return self._finish(request, self._run(self.build_command(step_path, request)))


class OpenSSLBackend(GenerationBackend):
    """Generate a self-signed certificate with ``openssl req -x509``."""

    name = "openssl"
    key_spec = "rsa:2048"

    def build_subject(self, request: GenerationRequest) -> str:
        return f"/C=KR/O={request.service_name} Service/CN={request.subject}"

    def build_config(self, request: GenerationRequest) -> str:
        san = ",".join(request.san_entries)
        return (
            "[req]\n"
            "distinguished_name = req_distinguished_name\n"
            "x509_extensions = v3_req\n"
            "prompt = no\n"
            "\n"
            "[req_distinguished_name]\n"
            "\n"
            "[v3_req]\n"
            "basicConstraints = CA:FALSE\n"
            "keyUsage = nonRepudiation, digitalSignature, keyEncipherment\n"
            f"subjectAltName = {san}\n"
        )

    def build_command(
        self,
        openssl_path: str,
        request: GenerationRequest,
        config_path: str,
    ) -> List[str]:
        return [
            openssl_path, "req", "-x509",
            "-newkey", self.key_spec,
            "-nodes",
            "-days", str(request.validity_days),
            "-keyout", str(request.key_path),
            "-out", str(request.cert_path),
            "-subj", self.build_subject(request),
            "-extensions", "v3_req",
            "-config", config_path,
        ]

    def generate(self, request: GenerationRequest) -> BackendResult:
        openssl_path = shutil.which("openssl")
        if not openssl_path:
            return BackendResult(
                status=BackendStatus.SOFT_FAILURE,
                backend=self.name,
                message="OpenSSL not found",
            )

        fd, config_path = tempfile.mkstemp(suffix=".cnf", prefix="cert_agent_")
        try:
            os.write(fd, self.build_config(request).encode())
        finally:
            os.close(fd)

        try:
            result = self._run(self.build_command(openssl_path, request, config_path))
        finally:
            if os.path.exists(config_path):
                os.unlink(config_path)

        return self._finish(request, result)


def default_backends() -> List[GenerationBackend]:
    """Backends in priority order."""
    return [StepCliBackend(), OpenSSLBackend()]


class GenerationBackendChain:
    """
    Tries each backend in order until one succeeds.

    Candidate paths are cleared before every attempt and after every failed
    attempt, so a failure never leaves partial output behind.
    """

    def __init__(self, backends: Optional[List[GenerationBackend]] = None):
        self.backends = backends if backends is not None else default_backends()
        self.logger = get_logger()

    def generate(self, request: GenerationRequest) -> BackendResult:
        """
        Produce a candidate pair.

        Returns:
            The first successful BackendResult, or a HARD_FAILURE result
            naming every attempt when all backends failed
        """
        attempts: List[str] = []

        for backend in self.backends:
            try:
                request.clear_outputs()
            except OSError as e:
                return BackendResult(
                    status=BackendStatus.HARD_FAILURE,
                    backend=backend.name,
                    message=f"Cannot clear candidate files: {e}",
                    attempts=attempts,
                )

            try:
                result = backend.generate(request)
            except OSError as e:
                result = BackendResult(
                    status=BackendStatus.SOFT_FAILURE,
                    backend=backend.name,
                    message=str(e),
                )

            attempts.append(backend.name)

            if result.succeeded:
                self.logger.success(f"Certificate generated successfully with {backend.name}")
                result.attempts = attempts
                return result

            self._discard_partial(request)

            if result.status == BackendStatus.HARD_FAILURE:
                self.logger.failure(f"{backend.name} failed: {result.message}")
                result.attempts = attempts
                return result

            self.logger.warning(f"{backend.name} failed: {result.message}")

        return BackendResult(
            status=BackendStatus.HARD_FAILURE,
            backend="none",
            message=f"All generation backends failed ({', '.join(attempts) or 'none configured'})",
            attempts=attempts,
        )

    def _discard_partial(self, request: GenerationRequest) -> None:
        try:
            request.clear_outputs()
        except OSError as e:
            self.logger.warning(f"Failed to remove partial candidate files: {e}")
