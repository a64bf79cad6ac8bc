#!/usr/bin/env python3
"""
Certificate Agent - Main Entry Point.

Keeps a short-lived TLS certificate for one service valid. The agent checks
the live certificate's expiry, regenerates it through the step CLI (falling
back to OpenSSL) when it is close to expiring, verifies and swaps the new
pair into place, and tells the service to reload.

Usage:
    # Daemon mode (default) - check every CHECK_INTERVAL seconds
    SERVER_IP=192.168.1.100 python main.py run

    # Single check, exit non-zero on failure
    SERVER_IP=192.168.1.100 python main.py once

    # Report directory and certificate status
    python main.py health

    # Print the effective configuration
    python main.py validate --config cert-agent.yaml
"""

import argparse
import json
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional

from certagent import __version__
from certagent.config_loader import ConfigurationError, RenewalConfig, load_config
from certagent.expiry import ExpiryChecker, ExpiryStatus
from certagent.backup import BackupRotator
from certagent.logger import setup_logger
from certagent.orchestrator import RenewalOrchestrator
from certagent.reload import ReloadTrigger


PROGRAM_NAME = "cert-agent"

COMMANDS = ("run", "once", "health", "validate", "version", "help")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

ENVIRONMENT_HELP = """
Commands:
  run         Run in daemon mode (default)
  once        Run one check and exit
  health      Check directories, tools and certificate status
  validate    Load and print the configuration
  version     Show version information
  help        Show this help message

Environment variables:
  SERVER_IP             Server IP for certificate SAN (required unless CERT_DOMAINS is set)
  CERT_DOMAINS          Comma-separated domains; the first one is used as identity
  SERVICE_NAME          Service name for certificate files (default: cert-agent)
  CERT_DIR              Certificate directory (default: /certs)
  LOG_DIR               Log directory (default: /logs)
  CHECK_INTERVAL        Check interval in seconds (default: 86400)
  DAYS_BEFORE_RENEWAL   Days before expiry to renew (default: 5)
  CERT_VALIDITY_DAYS    Certificate validity in days (default: 15)
  RELOAD_COMMAND        Command to reload service (optional)
  SLACK_WEBHOOK_URL     Slack webhook for notifications (optional)
  STEP_CA_CERT          Intermediate CA certificate for step (optional)
  STEP_CA_KEY           Intermediate CA key for step (optional)
  LOG_LEVEL             Log level (default: info)
  CERT_AGENT_CONFIG     YAML settings file (optional)
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description=f"Simple Certificate Manager v{__version__} - automated certificate lifecycle management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=ENVIRONMENT_HELP,
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        help="Command to execute (default: run)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Same as the 'once' command",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        dest="show_version",
        help="Same as the 'version' command",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML settings file (default: $CERT_AGENT_CONFIG)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print a JSON cycle report after 'once'",
    )

    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    The --once and --version flags are folded into ``args.command``.

    Returns:
        Parsed arguments namespace
    """
    args = build_parser().parse_args(argv)

    if args.show_version:
        args.command = "version"
    elif args.once:
        args.command = "once"

    return args


def print_version() -> None:
    print(f"Simple Certificate Manager v{__version__}")
    print("Features: step CLI generation with OpenSSL fallback, atomic deployment, "
          "backup rotation, webhook notifications")


def command_validate(config: RenewalConfig) -> int:
    """Print the effective configuration."""
    print("Configuration is valid:")
    for name, value in config.describe().items():
        print(f"  {name}: {value}")
    return EXIT_SUCCESS


def command_health(config: RenewalConfig) -> int:
    """
    Check that the agent can do its job.

    Fails when a directory is missing, openssl is unavailable, or the live
    certificate cannot be read. A missing or expiring certificate is only
    reported; the next cycle renews it.
    """
    healthy = True

    for label, directory in (("Certificate directory", config.cert_dir),
                             ("Log directory", config.log_dir)):
        if Path(directory).is_dir():
            print(f"[OK] {label}: {directory}")
        else:
            print(f"[FAIL] {label} not found: {directory}")
            healthy = False

    for tool, required in (("openssl", True), ("step", False)):
        path = shutil.which(tool)
        if path:
            print(f"[OK] {tool}: {path}")
        elif required:
            print(f"[FAIL] {tool} not found")
            healthy = False
        else:
            print(f"[--] {tool} not found (OpenSSL fallback will be used)")

    if healthy:
        result = ExpiryChecker(config).check()
        if result.status == ExpiryStatus.UNREADABLE:
            print(f"[FAIL] Certificate unreadable: {result.error}")
            healthy = False
        elif result.status == ExpiryStatus.MISSING:
            print(f"[--] No certificate at {config.cert_file}, it will be generated on the next check")
        else:
            print(f"[OK] Certificate {config.cert_file}: {result.days_remaining} days remaining "
                  f"({result.status.value})")

    backups = BackupRotator(config).list_backups()
    print(f"[--] Backup files: {len(backups)}")

    pending = ReloadTrigger(config).pending_signal()
    if pending:
        print(f"[--] Restart signal pending: {pending}")

    print("Health check passed" if healthy else "Health check failed")
    return EXIT_SUCCESS if healthy else EXIT_FAILURE


def _install_signal_handlers(orchestrator: RenewalOrchestrator) -> None:
    def handle_signal(signum, frame):
        orchestrator.logger.info(f"Received signal {signal.Signals(signum).name}, shutting down")
        orchestrator.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - Success
        1 - Cycle failure, failed health check, or unknown command
        2 - Configuration error

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parse_arguments(argv)
    command = args.command

    if command == "version":
        print_version()
        return EXIT_SUCCESS

    if command == "help":
        parser.print_help()
        return EXIT_SUCCESS

    if command not in COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        parser.print_help()
        return EXIT_FAILURE

    logger = setup_logger(level="debug" if args.verbose else "info", use_colors=not args.no_color)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    logger = setup_logger(
        level="debug" if args.verbose else config.log_level,
        use_colors=not args.no_color,
        log_file=str(config.log_file) if command in ("run", "once") else None,
    )

    if command == "validate":
        return command_validate(config)

    if command == "health":
        return command_health(config)

    orchestrator = RenewalOrchestrator(config)

    try:
        if command == "once":
            logger.info("Running once and exiting")
            report = orchestrator.run_once()
            if args.json:
                print(json.dumps(report.to_dict(), indent=2))
            return EXIT_FAILURE if report.failed else EXIT_SUCCESS

        logger.info("Starting in daemon mode")
        _install_signal_handlers(orchestrator)
        orchestrator.run_forever()
        return EXIT_SUCCESS

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return EXIT_FAILURE


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    sys.exit(main())
