"""
Backup snapshots of the live certificate and key.
"""

import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .config_loader import RenewalConfig
from .helpers import backup_timestamp, utcnow
from .logger import get_logger


BACKUP_RETENTION_DAYS = 30


class BackupError(Exception):
    """Raised when the live material cannot be backed up."""
    pass


class BackupRotator:
    """
    Copies the live pair into ``<cert_dir>/backup`` and prunes old entries.
    """

    def __init__(self, config: RenewalConfig, retention_days: int = BACKUP_RETENTION_DAYS):
        self.config = config
        self.retention = timedelta(days=retention_days)
        self.backup_dir = config.backup_dir
        self.logger = get_logger()

    def backup(self, now: Optional[datetime] = None) -> List[Path]:
        """
        Snapshot the live certificate and key.

        Nothing is copied unless both live files exist. Pruning runs after
        a successful snapshot.

        Returns:
            Paths of the created backup files (empty if nothing was live)

        Raises:
            BackupError: If the backup directory or copies cannot be written
        """
        cert_file = self.config.cert_file
        key_file = self.config.key_file

        if not (cert_file.is_file() and key_file.is_file()):
            self.logger.info("No existing certificate to back up")
            return []

        now = now or utcnow()
        timestamp = self._unused_timestamp(backup_timestamp(now))
        service = self.config.service_name

        targets = [
            (cert_file, self.backup_dir / f"{service}.crt.{timestamp}"),
            (key_file, self.backup_dir / f"{service}.key.{timestamp}"),
        ]

        created = []
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            for source, target in targets:
                shutil.copy2(source, target)
                created.append(target)
        except OSError as e:
            raise BackupError(f"Failed to back up certificate: {e}")

        self.logger.success(f"Existing certificate backed up: {timestamp}")

        self.prune(now)
        return created

    def _unused_timestamp(self, timestamp: str) -> str:
        """Append ``.1``, ``.2``, ... until neither backup name is taken."""
        service = self.config.service_name
        candidate = timestamp
        counter = 0
        while (
            (self.backup_dir / f"{service}.crt.{candidate}").exists()
            or (self.backup_dir / f"{service}.key.{candidate}").exists()
        ):
            counter += 1
            candidate = f"{timestamp}.{counter}"
        return candidate

    def prune(self, now: Optional[datetime] = None) -> List[Path]:
        """
        Delete backups whose modification time is older than the retention window.

        Failures are logged and skipped.

        Returns:
            Paths that were removed
        """
        now = now or utcnow()
        cutoff = (now - self.retention).timestamp()
        removed = []

        try:
            entries = list(os.scandir(self.backup_dir))
        except OSError as e:
            self.logger.warning(f"Cannot scan backup directory {self.backup_dir}: {e}")
            return removed

        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
                os.remove(entry.path)
            except OSError as e:
                self.logger.warning(f"Failed to remove old backup {entry.path}: {e}")
                continue

            self.logger.debug(f"Removed old backup: {entry.path}")
            removed.append(Path(entry.path))

        if removed:
            self.logger.info(f"Pruned {len(removed)} backup file(s) older than {self.retention.days} days")

        return removed

    def list_backups(self) -> List[Path]:
        """Backup files sorted by name."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(p for p in self.backup_dir.iterdir() if p.is_file())
