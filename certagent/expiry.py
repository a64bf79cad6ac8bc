"""
Certificate expiry inspection.

The live certificate's notAfter field is read with ``openssl x509 -enddate``
and compared against the renewal threshold.
"""

import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from .config_loader import RenewalConfig
from .helpers import days_remaining, format_expiration_status, is_expiring_soon, utcnow
from .logger import get_logger


OPENSSL_DATE_FORMAT = "%b %d %H:%M:%S %Y %Z"


class ExpiryCheckError(Exception):
    """Raised when a certificate's expiry cannot be read or parsed."""
    pass


class ExpiryStatus(Enum):
    """State of the live certificate."""
    VALID = "valid"
    NEEDS_RENEWAL = "needs_renewal"
    MISSING = "missing"
    UNREADABLE = "unreadable"


@dataclass
class ExpiryResult:
    """Result of one expiry check."""
    status: ExpiryStatus
    days_remaining: Optional[int] = None
    expires_on: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def needs_renewal(self) -> bool:
        """A missing certificate is renewed the same way as an expiring one."""
        return self.status in (ExpiryStatus.NEEDS_RENEWAL, ExpiryStatus.MISSING)


def parse_not_after(output: str) -> datetime:
    """
    Parse ``openssl x509 -enddate`` output into a UTC datetime.

    Accepts both ``notAfter=Jan  5 12:00:00 2030 GMT`` and the bare date.

    Raises:
        ValueError: If the text is not in the expected format
    """
    text = output.strip()
    if text.startswith("notAfter="):
        text = text[len("notAfter="):]
    text = " ".join(text.split())
    if not text:
        raise ValueError("empty notAfter value")

    parsed = datetime.strptime(text, OPENSSL_DATE_FORMAT)
    return parsed.replace(tzinfo=timezone.utc)


def read_not_after(cert_path: Union[str, Path]) -> datetime:
    """
    Read a certificate's expiry with the openssl executable.

    Raises:
        ExpiryCheckError: If openssl is unavailable, fails, or prints an
                          unparsable date
    """
    openssl_path = shutil.which("openssl")
    if not openssl_path:
        raise ExpiryCheckError("OpenSSL not found")

    try:
        result = subprocess.run(
            [openssl_path, "x509", "-enddate", "-noout", "-in", str(cert_path)],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        raise ExpiryCheckError(f"Failed to run openssl: {e}")

    if result.returncode != 0:
        raise ExpiryCheckError(
            f"Failed to read certificate file {cert_path}: {result.stderr.strip()}"
        )

    try:
        return parse_not_after(result.stdout)
    except ValueError as e:
        raise ExpiryCheckError(
            f"Failed to parse expiry date '{result.stdout.strip()}': {e}"
        )


class ExpiryChecker:
    """
    Decides whether the live certificate needs renewal.

    The inspector and clock are injectable so the decision can be tested
    without openssl or wall-clock time.
    """

    def __init__(
        self,
        config: RenewalConfig,
        inspector: Callable[[Union[str, Path]], datetime] = read_not_after,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.inspector = inspector
        self.clock = clock
        self.logger = get_logger()

    def check(self, cert_path: Optional[Union[str, Path]] = None) -> ExpiryResult:
        """
        Check the certificate at cert_path (defaults to the live certificate).

        Never raises for a missing or unreadable certificate; both are
        reported through the result status.
        """
        path = Path(cert_path) if cert_path else self.config.cert_file
        threshold = self.config.days_before_renewal

        if not path.exists():
            self.logger.warning(f"Certificate file not found: {path}")
            return ExpiryResult(status=ExpiryStatus.MISSING)

        try:
            expires_on = self.inspector(path)
        except ExpiryCheckError as e:
            self.logger.error(f"Cannot determine certificate expiry: {e}")
            return ExpiryResult(status=ExpiryStatus.UNREADABLE, error=str(e))

        now = self.clock()
        days_left = days_remaining(expires_on, now)

        self.logger.debug(f"Certificate expiry date: {expires_on.isoformat()}")
        self.logger.info(f"Certificate days remaining: {days_left} days")

        if is_expiring_soon(expires_on, threshold, now):
            self.logger.warning(
                f"Certificate renewal required: "
                f"{format_expiration_status(expires_on, threshold, now)}"
            )
            status = ExpiryStatus.NEEDS_RENEWAL
        else:
            self.logger.info(f"Certificate status healthy ({days_left} days remaining)")
            status = ExpiryStatus.VALID

        return ExpiryResult(
            status=status,
            days_remaining=days_left,
            expires_on=expires_on,
        )
