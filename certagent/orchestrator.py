"""
Renewal orchestration.

One cycle runs CHECK -> BACKUP -> GENERATE -> VERIFY -> DEPLOY -> RELOAD ->
NOTIFY. A terminal failure in any step up to DEPLOY ends the cycle with a
failure notification; the live certificate is left as it was. The daemon
loop runs cycles back to back, sleeping on a cancellable ticker between them.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from .backends import GenerationBackendChain, GenerationError, GenerationRequest
from .backup import BackupError, BackupRotator
from .config_loader import ConfigurationError, RenewalConfig
from .deployer import AtomicDeployer, CertificateVerifier, DeploymentError, VerificationError
from .expiry import ExpiryChecker, ExpiryResult, ExpiryStatus
from .helpers import utcnow
from .logger import get_logger
from .notification import NotificationManager
from .reload import ReloadTrigger


class RenewalOutcome(Enum):
    """Result of one renewal cycle."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    CHECK_FAILED = "check_failed"
    BACKUP_FAILED = "backup_failed"
    GENERATION_FAILED = "generation_failed"
    VERIFICATION_FAILED = "verification_failed"
    DEPLOYMENT_FAILED = "deployment_failed"

    @property
    def failed(self) -> bool:
        return self not in (RenewalOutcome.SUCCESS, RenewalOutcome.SKIPPED)


@dataclass
class CycleReport:
    """What happened during one cycle."""
    outcome: RenewalOutcome
    message: str
    days_remaining: Optional[int] = None
    expires_on: Optional[datetime] = None
    backend: Optional[str] = None
    reload_degraded: bool = False
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    completed_at: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.outcome.failed

    def finalize(self) -> "CycleReport":
        self.completed_at = utcnow().isoformat()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "outcome": self.outcome.value,
            "message": self.message,
            "days_remaining": self.days_remaining,
            "expires_on": self.expires_on.isoformat() if self.expires_on else None,
            "backend": self.backend,
            "reload_degraded": self.reload_degraded,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class Ticker:
    """
    Cancellable sleep between cycles.

    wait() returns early once stop() has been called, from any thread or a
    signal handler.
    """

    def __init__(self):
        self._stopped = threading.Event()

    def wait(self, seconds: float) -> bool:
        """
        Sleep for up to ``seconds``.

        Returns:
            True if the ticker was stopped
        """
        return self._stopped.wait(seconds)

    def stop(self) -> None:
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


class RenewalOrchestrator:
    """
    Sequences the renewal components for one certificate.

    The orchestrator is the only writer of the live certificate pair.
    Collaborators are created from the configuration unless injected.
    """

    def __init__(
        self,
        config: RenewalConfig,
        expiry_checker: Optional[ExpiryChecker] = None,
        backup_rotator: Optional[BackupRotator] = None,
        backend_chain: Optional[GenerationBackendChain] = None,
        verifier: Optional[CertificateVerifier] = None,
        deployer: Optional[AtomicDeployer] = None,
        reload_trigger: Optional[ReloadTrigger] = None,
        notifier: Optional[NotificationManager] = None,
        ticker: Optional[Ticker] = None,
    ):
        self.config = config
        self.expiry_checker = expiry_checker or ExpiryChecker(config)
        self.backup_rotator = backup_rotator or BackupRotator(config)
        self.backend_chain = backend_chain or GenerationBackendChain()
        self.verifier = verifier or CertificateVerifier(config)
        self.deployer = deployer or AtomicDeployer(config)
        self.reload_trigger = reload_trigger or ReloadTrigger(config)
        self.notifier = notifier or NotificationManager(config)
        self.ticker = ticker or Ticker()
        self.logger = get_logger()

    def initialize(self) -> None:
        """
        Create the certificate and log directories.

        Raises:
            ConfigurationError: If a directory cannot be created
        """
        self.logger.section("Certificate Agent Starting")
        for name, value in self.config.describe().items():
            self.logger.info(f"  {name}: {value}")

        for directory in (self.config.cert_dir, self.config.log_dir):
            try:
                Path(directory).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Cannot create directory {directory}: {e}")

    def check(self) -> ExpiryResult:
        return self.expiry_checker.check()

    def run_cycle(self) -> CycleReport:
        """
        Run one full check-and-maybe-renew pass.

        Failures are reported through the returned CycleReport, never raised.
        """
        self.logger.debug("=== Periodic check started ===")

        expiry = self.check()

        if expiry.status == ExpiryStatus.UNREADABLE:
            report = self._fail(
                RenewalOutcome.CHECK_FAILED,
                "Certificate expiry check failed",
                expiry.error,
            )
        elif not expiry.needs_renewal:
            report = CycleReport(
                outcome=RenewalOutcome.SKIPPED,
                message="Certificate is valid, no renewal needed",
                days_remaining=expiry.days_remaining,
                expires_on=expiry.expires_on,
            )
        else:
            self.logger.info("Certificate renewal is required")
            report = self.renew(expiry)

        self.logger.debug("=== Periodic check completed ===")
        return report.finalize()

    def renew(self, expiry: Optional[ExpiryResult] = None) -> CycleReport:
        """
        Back up, generate, verify, deploy and reload.

        The live pair is only touched by the deploy step, which runs after
        a successful verification.
        """
        self.logger.section("Certificate renewal process started")
        request = GenerationRequest.from_config(self.config)
        days_left = expiry.days_remaining if expiry else None

        try:
            self.backup_rotator.backup()
        except BackupError as e:
            return self._fail(RenewalOutcome.BACKUP_FAILED, "Certificate backup failed", str(e), days_left)

        self.logger.info("Generating new certificate...")
        generated = self.backend_chain.generate(request)
        try:
            generated.raise_for_status()
        except GenerationError as e:
            return self._fail(RenewalOutcome.GENERATION_FAILED, "Certificate generation failed", str(e), days_left)

        try:
            new_expiry = self.verifier.verify(request.cert_path, request.key_path)
        except VerificationError as e:
            self.verifier.discard(request.cert_path, request.key_path)
            return self._fail(RenewalOutcome.VERIFICATION_FAILED, "Certificate verification failed", str(e), days_left)

        try:
            deployment = self.deployer.deploy(request.cert_path, request.key_path)
        except DeploymentError as e:
            return self._fail(RenewalOutcome.DEPLOYMENT_FAILED, "Certificate replacement failed", str(e), days_left)

        reload_result = self.reload_trigger.trigger()
        degraded = not reload_result.success or not deployment.permissions_ok

        if degraded:
            details = []
            if not reload_result.success:
                details.append(f"reload failed: {reload_result.message}")
            if not deployment.permissions_ok:
                details.append("file permissions could not be set")
            message = "Certificate renewed with warnings"
            self.notifier.notify("warning", message, expiry_date=new_expiry, failure_reason="; ".join(details))
            self.logger.warning(f"{message}: {'; '.join(details)}")
        else:
            message = "Certificate renewal completed"
            self.notifier.notify("success", message, expiry_date=new_expiry)
            self.logger.success(message)

        return CycleReport(
            outcome=RenewalOutcome.SUCCESS,
            message=message,
            days_remaining=days_left,
            expires_on=new_expiry,
            backend=generated.backend,
            reload_degraded=degraded,
        )

    def _fail(
        self,
        outcome: RenewalOutcome,
        message: str,
        reason: Optional[str],
        days_left: Optional[int] = None,
    ) -> CycleReport:
        self.logger.failure(f"{message}: {reason}")
        self.notifier.notify("error", message, failure_reason=reason)
        return CycleReport(outcome=outcome, message=f"{message}: {reason}", days_remaining=days_left)

    def run_once(self) -> CycleReport:
        """Initialize and run a single cycle."""
        self.initialize()
        report = self.run_cycle()
        self.logger.info("Single check completed")
        return report

    def run_forever(self, max_cycles: Optional[int] = None) -> int:
        """
        Run cycles until stopped.

        A failing cycle is logged and the loop continues with the next tick.

        Args:
            max_cycles: Stop after this many cycles (None runs until stop())

        Returns:
            Number of cycles run
        """
        self.initialize()
        cycles = 0

        while not self.ticker.stopped:
            try:
                report = self.run_cycle()
                if report.failed:
                    self.logger.error(f"Cycle failed: {report.message}")
            except Exception as e:
                self.logger.exception(f"Unexpected error during renewal cycle: {e}")

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break

            self.logger.info(f"Waiting {self.config.check_interval} seconds until next check...")
            if self.ticker.wait(self.config.check_interval):
                break

        self.logger.info("Daemon loop stopped")
        return cycles

    def stop(self) -> None:
        """Interrupt the sleep between cycles and end the daemon loop."""
        self.ticker.stop()
