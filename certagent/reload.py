"""
Consumer reload after a certificate has been deployed.

Runs RELOAD_COMMAND when configured, otherwise drops a sentinel file in the
certificate directory for an external watcher.
"""

import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from .config_loader import RenewalConfig
from .logger import get_logger


SHELL_METACHARACTERS = ("&", "|", ";", ">", "<", "`", "$(", "*", "?")
RESTART_SIGNAL_CONTENT = "restart needed"


@dataclass
class ReloadResult:
    """Outcome of a reload attempt. A failure here degrades, but does not fail, a renewal."""
    success: bool
    method: str  # "command" or "signal_file"
    message: str = ""


def needs_shell(command: str) -> bool:
    """True if the command uses shell operators, substitution or globbing."""
    return any(token in command for token in SHELL_METACHARACTERS)


def build_reload_argv(command: str) -> List[str]:
    """
    Argument vector for the reload command.

    Compound commands go through ``sh -c``; simple ones are split and run
    directly.
    """
    if needs_shell(command):
        return ["sh", "-c", command]
    return shlex.split(command)


class ReloadTrigger:
    """Signals the consumer that new certificate material is in place."""

    def __init__(self, config: RenewalConfig):
        self.config = config
        self.logger = get_logger()

    def trigger(self) -> ReloadResult:
        """
        Run the reload command or write the restart sentinel.

        Never raises.
        """
        if self.config.reload_command:
            return self._run_command(self.config.reload_command)
        return self._write_signal_file()

    def _run_command(self, command: str) -> ReloadResult:
        self.logger.info(f"Executing reload command: {command}")

        try:
            argv = build_reload_argv(command)
        except ValueError as e:
            self.logger.warning(f"Cannot parse reload command: {e}")
            return ReloadResult(success=False, method="command", message=str(e))

        if not argv:
            self.logger.warning("Empty reload command")
            return ReloadResult(success=False, method="command", message="Empty reload command")

        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            self.logger.warning(f"Reload command could not be started: {e}")
            return ReloadResult(success=False, method="command", message=str(e))

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            self.logger.warning(f"Reload command failed (exit {result.returncode}): {stderr}")
            return ReloadResult(
                success=False,
                method="command",
                message=f"exit code {result.returncode}: {stderr}",
            )

        self.logger.success("Reload command executed successfully")
        return ReloadResult(success=True, method="command")

    def _write_signal_file(self) -> ReloadResult:
        signal_file = self.config.restart_signal_file
        try:
            signal_file.write_text(RESTART_SIGNAL_CONTENT)
        except OSError as e:
            self.logger.warning(f"Failed to create restart signal {signal_file}: {e}")
            return ReloadResult(success=False, method="signal_file", message=str(e))

        self.logger.info(f"Service restart signal created: {signal_file}")
        self.logger.info("Configure your orchestrator to watch for this file")
        return ReloadResult(success=True, method="signal_file")

    def pending_signal(self) -> Optional[str]:
        """Path of an unconsumed restart sentinel, if any."""
        signal_file = self.config.restart_signal_file
        return str(signal_file) if signal_file.exists() else None
