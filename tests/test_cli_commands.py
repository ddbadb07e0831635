"""Test CLI commands."""

import os
from datetime import datetime
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from vaultdr.backup.manager import BackupManager
from vaultdr.backup.models import BackupOutcome, BackupStatus, DRTestReport, RehearsalVerdict
from vaultdr.cli import cli


class TestCLICommands:
    """Test CLI command functionality."""

    def setup_method(self):
        """Setup test environment."""
        self.runner = CliRunner()

    def invoke(self, project, *args, **kwargs):
        return self.runner.invoke(cli, ["--project-root", project] + list(args), **kwargs)

    def test_cli_version(self):
        """Test CLI version display."""
        result = self.runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "version" in result.output.lower()

    def test_cli_help(self):
        """Test CLI help display."""
        result = self.runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "vaultdr" in result.output
        assert "Commands:" in result.output
        for command in ("backup", "validate", "restore", "rehearse", "rebuild", "schedule", "config"):
            assert command in result.output

    def test_cli_dry_run_backup(self, sample_project):
        """Test dry-run reports the plan without writing anything."""
        result = self.invoke(sample_project, "--dry-run", "backup", "run")

        assert result.exit_code == 0
        assert "DRY RUN: Would create a full backup" in result.output
        assert not os.path.exists(os.path.join(sample_project, "migration_backups"))

    def test_backup_run_exit_code_follows_outcome(self, sample_project):
        """Test a partial backup exits 1."""
        with patch("vaultdr.backup.BackupManager") as mock_manager:
            mock_manager.return_value.run_backup.return_value = BackupOutcome(
                status=BackupStatus.PARTIAL, failed_stage="REPLICATE", error="rclone failed"
            )

            result = self.invoke(sample_project, "backup", "run", "--force")

        assert result.exit_code == 1
        mock_manager.return_value.run_backup.assert_called_once_with(force=True)

    def test_backup_failure_exits_2(self, sample_project):
        with patch("vaultdr.backup.BackupManager") as mock_manager:
            mock_manager.return_value.run_database_backup.return_value = BackupOutcome(
                status=BackupStatus.FAILED, failed_stage="DATABASE", error="All database dump strategies failed"
            )

            result = self.invoke(sample_project, "backup", "database")

        assert result.exit_code == 2
        assert "Backup failed at stage DATABASE" in result.output

    def test_config_validate(self, sample_project):
        result = self.invoke(sample_project, "config", "validate")

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_invalid_config_exits_2(self, sample_project):
        with open(os.path.join(sample_project, "vaultdr.yml"), "w", encoding="utf-8") as f:
            f.write("backup:\n  encryption: rot13\n")

        result = self.invoke(sample_project, "config", "validate")

        assert result.exit_code == 2
        assert "Configuration is invalid" in result.output

    def test_config_show_redacts_secrets(self, sample_project):
        result = self.runner.invoke(
            cli,
            ["--project-root", sample_project, "config", "show"],
            env={"BACKUP_PASSPHRASE": "super-secret"},
        )

        assert result.exit_code == 0
        assert "backup:" in result.output
        assert "super-secret" not in result.output

    def test_schedule_show(self, sample_project):
        result = self.invoke(sample_project, "schedule", "show")

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 4
        assert all("# vaultdr:" in line for line in lines)


class TestValidateCommand:
    """Test the validate command."""

    def setup_method(self):
        self.runner = CliRunner()

    @pytest.fixture
    def archive(self, dr_config, mock_containers, mock_notifier):
        return BackupManager(dr_config, containers=mock_containers, notifier=mock_notifier).run_backup().archive.path

    def test_validate_latest(self, sample_project, archive):
        result = self.runner.invoke(cli, ["--project-root", sample_project, "validate", "--latest"])

        assert result.exit_code == 0
        assert os.path.basename(archive) in result.output
        assert "Verdict: PASS" in result.output

    def test_validate_corrupt_archive(self, sample_project, archive):
        with open(archive, "r+b") as f:
            f.seek(os.path.getsize(archive) // 2)
            f.write(b"\xff\xff\xff\xff")

        result = self.runner.invoke(cli, ["--project-root", sample_project, "validate", archive])

        assert result.exit_code == 2
        assert "Verdict: FAIL" in result.output

    def test_validate_without_archives(self, sample_project):
        result = self.runner.invoke(cli, ["--project-root", sample_project, "validate"])

        assert result.exit_code == 2
        assert "No backup archives found" in result.output

    def test_validate_rejects_multiple_selectors(self, sample_project, archive):
        result = self.runner.invoke(cli, ["--project-root", sample_project, "validate", archive, "--all"])

        assert result.exit_code == 2
        assert "Use only one of" in result.output


class TestRestoreAndRehearse:
    """Test commands that change or exercise the deployment."""

    def setup_method(self):
        self.runner = CliRunner()

    def test_restore_requires_confirmation(self, sample_project):
        with patch("vaultdr.backup.RecoveryManager") as mock_recovery:
            result = self.runner.invoke(
                cli, ["--project-root", sample_project, "restore", "backup.tar.gz"], input="n\n"
            )

        assert result.exit_code == 1
        mock_recovery.return_value.restore.assert_not_called()

    def test_restore_dry_run_lists_stages(self, sample_project):
        with patch("vaultdr.backup.RecoveryManager") as mock_recovery:
            result = self.runner.invoke(
                cli, ["--project-root", sample_project, "--dry-run", "restore", "backup.tar.gz"]
            )

        assert result.exit_code == 0
        assert "RESTORE_DATABASE" in result.output
        mock_recovery.return_value.check_preconditions.assert_called_once()
        mock_recovery.return_value.restore.assert_not_called()

    def test_restore_resolves_bare_archive_name(self, sample_project, dr_config):
        os.makedirs(dr_config.paths.backup_dir, exist_ok=True)
        name = "vaultwarden_sqlite_full_20260105_030000.tar.gz"
        with open(os.path.join(dr_config.paths.backup_dir, name), "wb") as f:
            f.write(b"archive")

        with patch("vaultdr.backup.RecoveryManager") as mock_recovery:
            result = self.runner.invoke(cli, ["--project-root", sample_project, "--dry-run", "restore", name])

        assert result.exit_code == 0
        archive = mock_recovery.return_value.check_preconditions.call_args[0][0]
        assert archive == os.path.join(dr_config.paths.backup_dir, name)

    def test_rehearse_automated(self, sample_project):
        report = DRTestReport(test_id="20260101_040000", test_date=datetime(2026, 1, 1, 4), test_result=RehearsalVerdict.WARNING)
        report.warnings.append("users and ciphers tables are empty")
        report.report_path = "/tmp/report.json"

        with patch("vaultdr.backup.RehearsalRunner") as mock_runner:
            mock_runner.return_value.run.return_value = report

            result = self.runner.invoke(cli, ["--project-root", sample_project, "rehearse", "--automated"])

        assert result.exit_code == 1
        assert "DR rehearsal WARNING" in result.output
        assert "users and ciphers tables are empty" in result.output

    def test_rehearse_interactive_can_be_declined(self, sample_project):
        with patch("vaultdr.backup.RehearsalRunner") as mock_runner:
            result = self.runner.invoke(cli, ["--project-root", sample_project, "rehearse"], input="n\n")

        assert result.exit_code == 1
        mock_runner.return_value.run.assert_not_called()
