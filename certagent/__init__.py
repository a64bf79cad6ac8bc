"""
Certificate agent modules.

This package contains:
- expiry: Live certificate expiry inspection
- backends: step CLI / OpenSSL certificate generation
- backup: Backup snapshots and retention pruning
- deployer: Candidate verification and atomic deployment
- reload: Service reload command or restart sentinel
- notification: Webhook notifications for renewal events
- orchestrator: Renewal cycle and daemon loop
- config_loader: Configuration loading and validation
- logger: Centralized logging setup
- helpers: Common utility functions
"""

__version__ = "0.3.0"

from .logger import setup_logger, get_logger
from .config_loader import load_config, RenewalConfig, ConfigurationError
from .expiry import ExpiryChecker, ExpiryResult, ExpiryStatus
from .backends import (
    GenerationBackendChain,
    GenerationRequest,
    BackendResult,
    BackendStatus,
    StepCliBackend,
    OpenSSLBackend,
)
from .backup import BackupRotator
from .deployer import AtomicDeployer, CertificateVerifier
from .reload import ReloadTrigger
from .helpers import (
    build_san_entries,
    is_expiring_soon,
    days_remaining,
)
from .notification import (
    NotificationManager,
    NotificationContext,
)
from .orchestrator import RenewalOrchestrator, RenewalOutcome, CycleReport

__all__ = [
    "__version__",
    # Logger
    "setup_logger",
    "get_logger",
    # Config
    "load_config",
    "RenewalConfig",
    "ConfigurationError",
    # Expiry
    "ExpiryChecker",
    "ExpiryResult",
    "ExpiryStatus",
    # Generation
    "GenerationBackendChain",
    "GenerationRequest",
    "BackendResult",
    "BackendStatus",
    "StepCliBackend",
    "OpenSSLBackend",
    # Backup and deployment
    "BackupRotator",
    "AtomicDeployer",
    "CertificateVerifier",
    "ReloadTrigger",
    # Helpers
    "build_san_entries",
    "is_expiring_soon",
    "days_remaining",
    # Notifications
    "NotificationManager",
    "NotificationContext",
    # Orchestration
    "RenewalOrchestrator",
    "RenewalOutcome",
    "CycleReport",
]
