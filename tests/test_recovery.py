"""Tests for staged restore."""

import os
from unittest.mock import patch

import pytest

from vaultdr.backup.manager import BackupManager
from vaultdr.backup.models import RestorePlan, RestoreStage, StageState
from vaultdr.backup.recovery import RecoveryManager, check_settings
from vaultdr.config.manager import ConfigManager
from vaultdr.utils.errors import PreconditionError
from vaultdr.utils.locking import RunLock

from conftest import row_counts, write_undecodable_dump


@pytest.fixture
def archive(dr_config, mock_containers, mock_notifier):
    outcome = BackupManager(dr_config, containers=mock_containers, notifier=mock_notifier).run_backup()
    return outcome.archive.path


def _recovery(config, containers):
    return RecoveryManager(config, containers=containers)


class TestRestore:
    """Test the restore state machine."""

    def test_round_trip_preserves_row_counts(self, dr_config, archive, mock_containers):
        before = row_counts(dr_config.paths.database)
        os.remove(dr_config.paths.database)

        plan = _recovery(dr_config, mock_containers).restore(archive)

        assert plan.completed
        assert plan.failed_stage is None
        assert row_counts(dr_config.paths.database) == before
        assert before["users"] == 3
        assert before["ciphers"] == 12

    def test_restore_is_idempotent(self, dr_config, archive, mock_containers):
        recovery = _recovery(dr_config, mock_containers)

        first = recovery.restore(archive)
        counts = row_counts(dr_config.paths.database)
        second = recovery.restore(archive)

        assert first.completed and second.completed
        assert row_counts(dr_config.paths.database) == counts
        assert [s.state for s in first.stages] == [s.state for s in second.stages]

    def test_restores_configuration_and_keeps_previous(self, dr_config, archive, mock_containers):
        settings = dr_config.paths.settings_file
        with open(settings, "w", encoding="utf-8") as f:
            f.write("DOMAIN_NAME=changed.example.com\n")

        plan = _recovery(dr_config, mock_containers).restore(archive)

        assert plan.status(RestoreStage.RESTORE_CONFIG).state == StageState.DONE
        with open(settings, encoding="utf-8") as f:
            assert "vault.example.com" in f.read()
        with open(settings + ".backup", encoding="utf-8") as f:
            assert "changed.example.com" in f.read()

    def test_restores_data_files(self, dr_config, archive, mock_containers):
        attachment = os.path.join(dr_config.paths.data_dir, "bwdata", "attachments", "a1", "file.bin")
        os.remove(attachment)

        _recovery(dr_config, mock_containers).restore(archive)

        assert os.path.exists(attachment)

    def test_corrupt_archive_stops_at_validate(self, dr_config, archive, mock_containers):
        with open(archive, "r+b") as f:
            f.seek(os.path.getsize(archive) // 2)
            f.write(b"\x00\x00\x00\x00")
        before = row_counts(dr_config.paths.database)

        plan = _recovery(dr_config, mock_containers).restore(archive)

        assert plan.failed_stage == RestoreStage.VALIDATE
        assert plan.exit_code == 2
        assert plan.status(RestoreStage.EXTRACT).state == StageState.PENDING
        assert row_counts(dr_config.paths.database) == before

    def test_running_service_is_refused(self, dr_config, archive, mock_containers):
        mock_containers.is_available.return_value = True
        mock_containers.is_running.return_value = True

        with pytest.raises(PreconditionError) as exc_info:
            _recovery(dr_config, mock_containers).restore(archive)

        assert "running" in exc_info.value.message

    def test_allow_running_skips_service_check(self, dr_config, archive, mock_containers):
        mock_containers.is_available.return_value = True
        mock_containers.is_running.return_value = True

        plan = _recovery(dr_config, mock_containers).restore(archive, allow_running=True)

        assert plan.completed

    def test_missing_archive(self, dr_config, mock_containers, temp_directory):
        with pytest.raises(PreconditionError):
            _recovery(dr_config, mock_containers).restore(os.path.join(temp_directory, "missing.tar.gz"))

    def test_placeholder_dump_skips_database(self, dr_config, mock_containers, mock_notifier):
        os.remove(dr_config.paths.database)
        outcome = BackupManager(dr_config, containers=mock_containers, notifier=mock_notifier).run_backup()

        plan = _recovery(dr_config, mock_containers).restore(outcome.archive.path)

        assert plan.completed
        assert plan.status(RestoreStage.RESTORE_DATABASE).state == StageState.SKIPPED
        assert any("placeholder" in a for a in plan.advisories)
        assert plan.exit_code == 1

    def test_missing_tls_is_skipped(self, dr_config, mock_containers, mock_notifier):
        import shutil

        shutil.rmtree(os.path.join(dr_config.paths.data_dir, "caddy_data"))
        outcome = BackupManager(dr_config, containers=mock_containers, notifier=mock_notifier).run_backup()

        plan = _recovery(dr_config, mock_containers).restore(outcome.archive.path)

        assert plan.completed
        assert plan.status(RestoreStage.RESTORE_TLS).state == StageState.SKIPPED

    def test_interrupt_during_load_cleans_up(self, sample_project, mock_containers, mock_notifier, temp_directory):
        scratch_root = os.path.join(temp_directory, "scratch")
        config = ConfigManager(project_root=sample_project, environ={"VAULTDR_SCRATCH_ROOT": scratch_root}).load()
        archive = BackupManager(config, containers=mock_containers, notifier=mock_notifier).run_backup().archive.path

        with patch("vaultdr.backup.database.load_dump", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                _recovery(config, mock_containers).restore(archive)

        assert os.listdir(scratch_root) == []
        assert not os.path.exists(config.paths.database + ".restoring")
        with RunLock(config.paths.lock_file, "restore") as lock:
            assert lock.held

    def test_restore_while_backup_running(self, dr_config, archive, mock_containers):
        with RunLock(dr_config.paths.lock_file, "backup"):
            with pytest.raises(PreconditionError):
                _recovery(dr_config, mock_containers).restore(archive)

    def test_undecodable_dump_fails_database_stage(self, dr_config, mock_containers, mock_notifier):
        with patch("vaultdr.backup.database.dump_database", side_effect=write_undecodable_dump):
            archive = BackupManager(dr_config, containers=mock_containers, notifier=mock_notifier).run_backup().archive

        plan = _recovery(dr_config, mock_containers).restore(archive.path)

        assert not plan.completed
        assert plan.failed_stage == RestoreStage.RESTORE_DATABASE
        assert "not valid UTF-8" in plan.status(RestoreStage.RESTORE_DATABASE).detail
        assert plan.status(RestoreStage.RESTORE_CONFIG).state == StageState.PENDING
        assert plan.exit_code == 2

    def test_unexpected_error_marks_stage_failed(self, dr_config, archive, mock_containers):
        plans = []
        for_archive = RestorePlan.for_archive

        def record(path):
            plan = for_archive(path)
            plans.append(plan)
            return plan

        with patch("vaultdr.backup.recovery.RestorePlan.for_archive", side_effect=record):
            with patch.object(RecoveryManager, "_extract", side_effect=TypeError("bad member")):
                with pytest.raises(TypeError):
                    _recovery(dr_config, mock_containers).restore(archive)

        status = plans[0].status(RestoreStage.EXTRACT)
        assert status.state == StageState.FAILED
        assert status.detail == "TypeError: bad member"
        with RunLock(dr_config.paths.lock_file, "restore") as lock:
            assert lock.held


class TestCheckSettings:
    """Test post-restore configuration advisories."""

    def test_clean_settings(self):
        values = {
            "DOMAIN_NAME": "vault.example.com",
            "APP_DOMAIN": "vault.example.com",
            "ADMIN_TOKEN": "t",
            "DATABASE_URL": "/data/db.sqlite3",
            "ROCKET_WORKERS": "1",
            "WEBSOCKET_ENABLED": "true",
        }

        assert check_settings(values) == []

    def test_drift_is_reported(self):
        values = {
            "DOMAIN_NAME": "vault.example.com",
            "DATABASE_URL": "mysql://vault@db/vault",
            "MARIADB_PASSWORD": "old",
            "ROCKET_WORKERS": "10",
        }

        advisories = check_settings(values)

        assert any("APP_DOMAIN" in a for a in advisories)
        assert any("ADMIN_TOKEN" in a for a in advisories)
        assert any("DATABASE_URL" in a for a in advisories)
        assert any("MARIADB_PASSWORD" in a for a in advisories)
        assert any("ROCKET_WORKERS" in a for a in advisories)
        assert any("WEBSOCKET_ENABLED" in a for a in advisories)
