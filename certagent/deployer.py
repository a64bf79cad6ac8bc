"""
Verification and deployment of freshly generated certificate material.

Verification runs against the candidate files first; only a verified pair is
swapped into the live paths. Each file is replaced with a rename, which is
atomic for readers on the same filesystem. The pair as a whole is swapped
with two renames.
"""

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization

from .config_loader import RenewalConfig
from .helpers import remove_if_exists
from .logger import get_logger


CERT_FILE_MODE = 0o644
KEY_FILE_MODE = 0o600
ASIDE_SUFFIX = ".old"


class VerificationError(Exception):
    """Raised when a candidate certificate fails verification."""
    pass


class DeploymentError(Exception):
    """Raised when the candidate pair cannot be moved into place."""
    pass


def read_certificate_text(cert_path: Union[str, Path]) -> str:
    """
    Return ``openssl x509 -noout -text`` output for a certificate.

    Raises:
        VerificationError: If openssl is missing or rejects the file
    """
    openssl_path = shutil.which("openssl")
    if not openssl_path:
        raise VerificationError("OpenSSL not found")

    try:
        result = subprocess.run(
            [openssl_path, "x509", "-noout", "-text", "-in", str(cert_path)],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        raise VerificationError(f"Failed to run openssl: {e}")

    if result.returncode != 0:
        raise VerificationError(f"Certificate format is invalid: {result.stderr.strip()}")

    return result.stdout


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


class CertificateVerifier:
    """
    Structural and identity checks for a candidate pair.
    """

    def __init__(
        self,
        config: RenewalConfig,
        text_reader: Callable[[Union[str, Path]], str] = read_certificate_text,
    ):
        self.config = config
        self.text_reader = text_reader
        self.logger = get_logger()

    def verify(self, cert_path: Path, key_path: Path) -> datetime:
        """
        Verify a candidate certificate and key.

        Checks that the certificate parses, that the configured identity
        appears in its text form, and that the key belongs to it.

        Returns:
            The candidate's expiry (timezone-aware UTC)

        Raises:
            VerificationError: On any failed check
        """
        self.logger.debug("Verifying certificate...")

        text = self.text_reader(cert_path)
        identity = self.config.server_identity
        if identity not in text:
            raise VerificationError(f"Server identity {identity} not found in certificate")
        self.logger.info(f"Server identity {identity} found in certificate")

        try:
            with open(cert_path, "rb") as f:
                cert = x509.load_pem_x509_certificate(f.read(), default_backend())
            with open(key_path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise VerificationError(f"Cannot load candidate material: {e}")

        if _public_key_der(cert.public_key()) != _public_key_der(key.public_key()):
            raise VerificationError("Private key does not match certificate")

        expires_on = cert.not_valid_after_utc
        self.logger.info(f"New certificate expiry date: {expires_on.strftime('%Y-%m-%d %H:%M UTC')}")
        self.logger.success("Certificate verification completed")
        return expires_on

    def discard(self, cert_path: Path, key_path: Path) -> None:
        """Delete the candidate files after a failed verification."""
        for path in (cert_path, key_path):
            try:
                remove_if_exists(path)
            except OSError as e:
                self.logger.warning(f"Failed to remove candidate file {path}: {e}")


@dataclass
class DeploymentResult:
    """Outcome of a successful deployment."""
    cert_path: Path
    key_path: Path
    permissions_ok: bool = True
    aside: List[Path] = field(default_factory=list)


class AtomicDeployer:
    """
    Swaps a verified candidate pair into the live paths.

    Steps: confirm candidates exist, link live files aside, rename
    candidates over the live paths, set permissions. The live paths are
    never removed; a failed rename restores the pairs already replaced.
    """

    def __init__(self, config: RenewalConfig):
        self.config = config
        self.logger = get_logger()

    def deploy(
        self,
        candidate_cert: Optional[Path] = None,
        candidate_key: Optional[Path] = None,
    ) -> DeploymentResult:
        """
        Replace the live certificate and key with the candidate pair.

        Raises:
            DeploymentError: If the candidates are missing or a rename fails
        """
        candidate_cert = candidate_cert or self.config.candidate_cert_file
        candidate_key = candidate_key or self.config.candidate_key_file
        live_cert = self.config.cert_file
        live_key = self.config.key_file

        self.logger.info("Replacing certificate...")

        if not (candidate_cert.is_file() and candidate_key.is_file()):
            raise DeploymentError("New certificate files not found")

        pairs = [(candidate_cert, live_cert), (candidate_key, live_key)]

        kept_aside = self._keep_aside([live for _, live in pairs])

        replaced: List[Path] = []
        try:
            for candidate, live in pairs:
                os.replace(candidate, live)
                replaced.append(live)
        except OSError as e:
            self._restore([(live, aside) for live, aside in kept_aside if live in replaced])
            raise DeploymentError(f"Failed to move new certificate into place: {e}")

        permissions_ok = self.set_permissions(live_cert, live_key)

        self.logger.success(f"Certificate deployed to {live_cert}")
        return DeploymentResult(
            cert_path=live_cert,
            key_path=live_key,
            permissions_ok=permissions_ok,
            aside=[aside for _, aside in kept_aside],
        )

    def _keep_aside(self, live_paths: List[Path]) -> List[Tuple[Path, Path]]:
        """Link existing live files to ``<name>.old``, copying when linking fails."""
        kept: List[Tuple[Path, Path]] = []
        for live in live_paths:
            if not live.exists():
                continue
            aside = live.with_name(live.name + ASIDE_SUFFIX)
            try:
                remove_if_exists(aside)
                try:
                    os.link(live, aside)
                except OSError:
                    shutil.copy2(live, aside)
            except OSError as e:
                raise DeploymentError(f"Failed to keep {live} aside: {e}")
            kept.append((live, aside))
        return kept

    def _restore(self, kept: List[Tuple[Path, Path]]) -> None:
        for live, aside in reversed(kept):
            try:
                os.replace(aside, live)
                self.logger.warning(f"Restored previous file {live}")
            except OSError as e:
                self.logger.error(f"Failed to restore {live} from {aside}: {e}")

    def set_permissions(self, cert_path: Path, key_path: Path) -> bool:
        """
        Make the certificate world-readable and the key owner-only.

        Failures are logged; the deployed material is left in place.
        """
        ok = True
        for path, mode in ((cert_path, CERT_FILE_MODE), (key_path, KEY_FILE_MODE)):
            try:
                os.chmod(path, mode)
            except OSError as e:
                ok = False
                self.logger.warning(f"Failed to set permissions {oct(mode)} on {path}: {e}")

        if ok:
            self.logger.debug("Set certificate permissions: cert=644, key=600")
        return ok
