"""Tests for backup snapshots and pruning."""

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from certagent.backup import BackupError, BackupRotator
from certagent.config_loader import RenewalConfig


NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class BackupTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.config = RenewalConfig(server_identity="127.0.0.1", service_name="api", cert_dir=self.tmp.name)
        self.rotator = BackupRotator(self.config)

    def write_live_pair(self):
        self.config.cert_file.write_text("CERT")
        self.config.key_file.write_text("KEY")

    def make_backup_file(self, name, age):
        self.config.backup_dir.mkdir(parents=True, exist_ok=True)
        path = self.config.backup_dir / name
        path.write_text("old")
        mtime = (NOW - age).timestamp()
        os.utime(path, (mtime, mtime))
        return path


class TestBackup(BackupTestCase):

    def test_backup_creates_two_files(self):
        self.write_live_pair()
        created = self.rotator.backup(now=NOW)
        self.assertEqual(
            [p.name for p in created],
            ["api.crt.20250301_120000", "api.key.20250301_120000"],
        )
        self.assertEqual(len(list(self.config.backup_dir.iterdir())), 2)
        self.assertEqual(created[0].read_text(), "CERT")
        self.assertEqual(created[1].read_text(), "KEY")

    def test_same_second_backups_do_not_overwrite(self):
        self.write_live_pair()
        first = self.rotator.backup(now=NOW)
        self.config.cert_file.write_text("CERT 2")
        self.config.key_file.write_text("KEY 2")
        second = self.rotator.backup(now=NOW)

        self.assertEqual(
            [p.name for p in second],
            ["api.crt.20250301_120000.1", "api.key.20250301_120000.1"],
        )
        self.assertEqual(first[0].read_text(), "CERT")
        self.assertEqual(first[1].read_text(), "KEY")
        self.assertEqual(second[0].read_text(), "CERT 2")
        self.assertEqual(len(list(self.config.backup_dir.iterdir())), 4)

    def test_no_live_pair_no_backup(self):
        self.assertEqual(self.rotator.backup(now=NOW), [])
        self.assertFalse(self.config.backup_dir.exists())

    def test_only_certificate_is_not_backed_up(self):
        self.config.cert_file.write_text("CERT")
        self.assertEqual(self.rotator.backup(now=NOW), [])

    def test_copy_failure_raises(self):
        self.write_live_pair()
        with patch("certagent.backup.shutil.copy2", side_effect=PermissionError("denied")):
            with self.assertRaises(BackupError):
                self.rotator.backup(now=NOW)

    def test_backup_prunes_old_entries(self):
        old = self.make_backup_file("api.crt.20250101_000000", timedelta(days=45))
        self.write_live_pair()
        self.rotator.backup(now=NOW)
        self.assertFalse(old.exists())

    def test_list_backups_sorted(self):
        self.make_backup_file("api.key.20250201_000000", timedelta(days=1))
        self.make_backup_file("api.crt.20250201_000000", timedelta(days=1))
        self.assertEqual(
            [p.name for p in self.rotator.list_backups()],
            ["api.crt.20250201_000000", "api.key.20250201_000000"],
        )


class TestPrune(BackupTestCase):
    """Retention window boundaries."""

    def test_retention_boundaries(self):
        recent = self.make_backup_file("api.crt.29", timedelta(days=29))
        inside = self.make_backup_file("api.crt.30", timedelta(days=30) - timedelta(minutes=1))
        at_cutoff = self.make_backup_file("api.crt.cutoff", timedelta(days=30))
        expired = self.make_backup_file("api.crt.31", timedelta(days=31))

        removed = self.rotator.prune(now=NOW)

        self.assertEqual(removed, [expired])
        self.assertTrue(recent.exists())
        self.assertTrue(inside.exists())
        self.assertTrue(at_cutoff.exists())
        self.assertFalse(expired.exists())

    def test_missing_backup_dir(self):
        self.assertEqual(self.rotator.prune(now=NOW), [])

    def test_delete_failure_is_logged_and_skipped(self):
        self.make_backup_file("api.crt.old", timedelta(days=40))
        with patch("certagent.backup.os.remove", side_effect=PermissionError("denied")):
            self.assertEqual(self.rotator.prune(now=NOW), [])

    def test_subdirectories_ignored(self):
        self.config.backup_dir.mkdir(parents=True)
        nested = self.config.backup_dir / "nested"
        nested.mkdir()
        mtime = (NOW - timedelta(days=60)).timestamp()
        os.utime(nested, (mtime, mtime))
        self.rotator.prune(now=NOW)
        self.assertTrue(nested.is_dir())


if __name__ == "__main__":
    unittest.main()
