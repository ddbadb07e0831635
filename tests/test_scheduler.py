"""Tests for crontab scheduling."""

import subprocess
from unittest.mock import patch

import pytest

from vaultdr.backup.scheduler import MARKER, BackupScheduler
from vaultdr.utils.errors import PreconditionError, VaultDRError


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestBackupScheduler:
    """Test crontab rendering and installation."""

    def test_render_lines(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="/usr/local/bin/vaultdr")

        lines = scheduler.render()

        assert len(lines) == 4
        assert lines[0].startswith("0 3 * * 1 /usr/local/bin/vaultdr --project-root ")
        assert lines[0].endswith(f"{MARKER}full-backup")
        assert " backup database >> " in lines[1]
        assert " validate --latest --deep >> " in lines[2]
        assert lines[3].startswith("0 4 1 * * ")
        assert " rehearse --automated >> " in lines[3]
        assert all(" 2>&1 " in line for line in lines)

    def test_render_includes_config_path(self, dr_config, sample_project):
        scheduler = BackupScheduler(dr_config, config_path=f"{sample_project}/vaultdr.yml", executable="vaultdr")

        assert all(f"-c {sample_project}/vaultdr.yml" in line for line in scheduler.render())

    def test_merge_replaces_previous_lines(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")
        current = "MAILTO=ops@example.com\n0 1 * * * /old/vaultdr backup run # vaultdr:full-backup\n\n"

        merged = scheduler.merge(current)

        assert merged.startswith("MAILTO=ops@example.com\n")
        assert "/old/vaultdr" not in merged
        assert merged.count(MARKER) == 4
        assert merged.endswith("\n")

    def test_merge_is_stable(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")

        once = scheduler.merge("")

        assert scheduler.merge(once) == once

    def test_install(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")
        results = [_completed(stdout="MAILTO=ops@example.com\n"), _completed()]

        with patch("vaultdr.backup.scheduler.shutil.which", return_value="/usr/bin/crontab"):
            with patch("vaultdr.backup.scheduler.subprocess.run", side_effect=results) as mock_run:
                content = scheduler.install()

        assert mock_run.call_count == 2
        assert mock_run.call_args_list[1][0][0] == ["crontab", "-"]
        assert mock_run.call_args_list[1][1]["input"] == content
        assert "MAILTO=ops@example.com" in content

    def test_install_without_existing_crontab(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")
        results = [_completed(returncode=1, stderr="no crontab for user"), _completed()]

        with patch("vaultdr.backup.scheduler.shutil.which", return_value="/usr/bin/crontab"):
            with patch("vaultdr.backup.scheduler.subprocess.run", side_effect=results):
                content = scheduler.install()

        assert content.count(MARKER) == 4

    def test_install_dry_run(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")

        with patch("vaultdr.backup.scheduler.shutil.which", return_value="/usr/bin/crontab"):
            with patch("vaultdr.backup.scheduler.subprocess.run", return_value=_completed()) as mock_run:
                scheduler.install(dry_run=True)

        mock_run.assert_called_once()

    def test_install_without_cron(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")

        with patch("vaultdr.backup.scheduler.shutil.which", return_value=None):
            with pytest.raises(PreconditionError):
                scheduler.install()

    def test_install_rejected(self, dr_config):
        scheduler = BackupScheduler(dr_config, executable="vaultdr")
        results = [_completed(), _completed(returncode=1, stderr="bad minute")]

        with patch("vaultdr.backup.scheduler.shutil.which", return_value="/usr/bin/crontab"):
            with patch("vaultdr.backup.scheduler.subprocess.run", side_effect=results):
                with pytest.raises(VaultDRError) as exc_info:
                    scheduler.install()

        assert exc_info.value.details == "bad minute"
