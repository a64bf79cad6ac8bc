"""
Configuration loading, validation, and parsing.

Configuration comes from environment variables (the names are part of the
deployment contract and must not change) and, optionally, from a YAML file
whose ``settings`` section uses the same names in lower case. Environment
variables take precedence over the file.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .logger import get_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_SERVICE_NAME = "cert-agent"
DEFAULT_CERT_DIR = "/certs"
DEFAULT_LOG_DIR = "/logs"
DEFAULT_CHECK_INTERVAL = 86400
DEFAULT_DAYS_BEFORE_RENEWAL = 5
DEFAULT_CERT_VALIDITY_DAYS = 15
DEFAULT_LOG_LEVEL = "info"

CONFIG_PATH_ENV = "CERT_AGENT_CONFIG"

# Environment names read by load_config, in the order they are reported
SETTING_NAMES = (
    "SERVER_IP",
    "CERT_DOMAINS",
    "SERVICE_NAME",
    "CERT_DIR",
    "LOG_DIR",
    "CHECK_INTERVAL",
    "DAYS_BEFORE_RENEWAL",
    "CERT_VALIDITY_DAYS",
    "RELOAD_COMMAND",
    "SLACK_WEBHOOK_URL",
    "NOTIFICATION_URL",
    "STEP_CA_CERT",
    "STEP_CA_KEY",
    "LOG_LEVEL",
)


@dataclass(frozen=True)
class RenewalConfig:
    """
    Immutable configuration for one agent process.

    Every component receives this object explicitly; there is no
    process-wide configuration singleton.
    """
    server_identity: str
    service_name: str = DEFAULT_SERVICE_NAME
    cert_dir: str = DEFAULT_CERT_DIR
    log_dir: str = DEFAULT_LOG_DIR
    check_interval: int = DEFAULT_CHECK_INTERVAL
    days_before_renewal: int = DEFAULT_DAYS_BEFORE_RENEWAL
    cert_validity_days: int = DEFAULT_CERT_VALIDITY_DAYS
    reload_command: Optional[str] = None
    notification_url: Optional[str] = None
    step_ca_cert: Optional[str] = None
    step_ca_key: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def cert_file(self) -> Path:
        """Live certificate path."""
        return Path(self.cert_dir) / f"{self.service_name}.crt"

    @property
    def key_file(self) -> Path:
        """Live private key path."""
        return Path(self.cert_dir) / f"{self.service_name}.key"

    @property
    def candidate_cert_file(self) -> Path:
        return Path(self.cert_dir) / f"{self.service_name}-new.crt"

    @property
    def candidate_key_file(self) -> Path:
        return Path(self.cert_dir) / f"{self.service_name}-new.key"

    @property
    def backup_dir(self) -> Path:
        return Path(self.cert_dir) / "backup"

    @property
    def restart_signal_file(self) -> Path:
        return Path(self.cert_dir) / ".restart_needed"

    @property
    def log_file(self) -> Path:
        return Path(self.log_dir) / f"{self.service_name}.log"

    def describe(self) -> Dict[str, Any]:
        """Return a loggable view of the configuration."""
        return {
            "server_identity": self.server_identity,
            "service_name": self.service_name,
            "cert_dir": self.cert_dir,
            "log_dir": self.log_dir,
            "check_interval": self.check_interval,
            "days_before_renewal": self.days_before_renewal,
            "cert_validity_days": self.cert_validity_days,
            "reload_command": self.reload_command or "(sentinel file)",
            "notifications": "enabled" if self.notification_url else "disabled",
            "step_ca": "configured" if self.step_ca_cert and self.step_ca_key else "self-signed",
            "log_level": self.log_level,
        }


def _expand_env_vars(value: Any, environ: Mapping[str, str]) -> Any:
    """
    Expand ${VAR_NAME} references in string values.

    Unknown variables are left as written.
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"

        def replace(match):
            return environ.get(match.group(1), match.group(0))

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v, environ) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item, environ) for item in value]

    return value


def _load_settings_file(config_path: str, environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Load the ``settings`` section of a YAML configuration file.

    Keys are upper-cased so they line up with the environment names.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    if path.suffix not in (".yaml", ".yml"):
        raise ConfigurationError(
            f"Configuration file must be YAML (.yaml or .yml): {config_path}"
        )

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not raw_data:
        return {}

    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    settings = raw_data.get("settings", {})
    if not isinstance(settings, dict):
        raise ConfigurationError("'settings' section must be a mapping")

    settings = _expand_env_vars(settings, environ)

    unknown = sorted(k for k in settings if str(k).upper() not in SETTING_NAMES)
    if unknown:
        raise ConfigurationError(f"Unknown settings in {config_path}: {', '.join(unknown)}")

    return {str(k).upper(): v for k, v in settings.items() if v is not None}


def _parse_int(name: str, raw: Any, default: int, minimum: Optional[int] = None) -> int:
    """Parse an integer setting, falling back to the default on bad input."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        get_logger().warning(f"Invalid value for {name}: {raw!r}, using default {default}")
        return default
    if minimum is not None and value < minimum:
        get_logger().warning(f"{name} must be at least {minimum}, got {value}; using default {default}")
        return default
    return value


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _parse_identity(values: Mapping[str, Any]) -> str:
    """
    Resolve the subject identity from SERVER_IP or the first CERT_DOMAINS entry.
    """
    server_ip = _optional_str(values.get("SERVER_IP"))
    if server_ip:
        return server_ip

    domains = values.get("CERT_DOMAINS")
    if isinstance(domains, list):
        domains = ",".join(str(d) for d in domains)
    if domains is not None:
        first = str(domains).split(",")[0].strip()
        return first or "localhost"

    raise ConfigurationError("SERVER_IP or CERT_DOMAINS environment variable is required")


def _parse_service_name(raw: Any) -> str:
    """Service name used as a file name prefix; path separators are replaced."""
    name = _optional_str(raw) or DEFAULT_SERVICE_NAME
    if "/" in name:
        safe = name.replace("/", "-")
        get_logger().warning(f"SERVICE_NAME must not contain '/': {name!r}, using {safe!r}")
        return safe
    return name


def _warn_inconsistent(config: RenewalConfig) -> None:
    """Log settings that are accepted but will not behave as intended."""
    logger = get_logger()
    if config.cert_validity_days <= config.days_before_renewal:
        logger.warning(
            f"CERT_VALIDITY_DAYS ({config.cert_validity_days}) is not greater than "
            f"DAYS_BEFORE_RENEWAL ({config.days_before_renewal}); "
            "every check will renew the certificate"
        )
    if bool(config.step_ca_cert) != bool(config.step_ca_key):
        logger.warning(
            "STEP_CA_CERT and STEP_CA_KEY must be set together; "
            "generating self-signed certificates"
        )


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RenewalConfig:
    """
    Load and validate the agent configuration.

    Args:
        config_path: Optional YAML file; defaults to $CERT_AGENT_CONFIG
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated RenewalConfig instance

    Raises:
        ConfigurationError: If the identity is missing or the file is unusable
    """
    if environ is None:
        environ = os.environ

    config_path = config_path or environ.get(CONFIG_PATH_ENV)

    values: Dict[str, Any] = {}
    if config_path:
        values.update(_load_settings_file(config_path, environ))
    for name in SETTING_NAMES:
        if name in environ:
            values[name] = environ[name]

    config = RenewalConfig(
        server_identity=_parse_identity(values),
        service_name=_parse_service_name(values.get("SERVICE_NAME")),
        cert_dir=_optional_str(values.get("CERT_DIR")) or DEFAULT_CERT_DIR,
        log_dir=_optional_str(values.get("LOG_DIR")) or DEFAULT_LOG_DIR,
        check_interval=_parse_int(
            "CHECK_INTERVAL", values.get("CHECK_INTERVAL"), DEFAULT_CHECK_INTERVAL, minimum=1
        ),
        days_before_renewal=_parse_int(
            "DAYS_BEFORE_RENEWAL", values.get("DAYS_BEFORE_RENEWAL"), DEFAULT_DAYS_BEFORE_RENEWAL,
            minimum=0,
        ),
        cert_validity_days=_parse_int(
            "CERT_VALIDITY_DAYS", values.get("CERT_VALIDITY_DAYS"), DEFAULT_CERT_VALIDITY_DAYS,
            minimum=1,
        ),
        reload_command=_optional_str(values.get("RELOAD_COMMAND")),
        notification_url=(
            _optional_str(values.get("SLACK_WEBHOOK_URL"))
            or _optional_str(values.get("NOTIFICATION_URL"))
        ),
        step_ca_cert=_optional_str(values.get("STEP_CA_CERT")),
        step_ca_key=_optional_str(values.get("STEP_CA_KEY")),
        log_level=_optional_str(values.get("LOG_LEVEL")) or DEFAULT_LOG_LEVEL,
    )

    _warn_inconsistent(config)

    if config_path:
        get_logger().debug(f"Loaded configuration file {config_path}")

    return config
