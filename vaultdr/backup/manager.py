"""Backup orchestration for the protected deployment."""

import dataclasses
import logging
import os
import shutil
import sqlite3
import time
from datetime import datetime
from typing import List, Optional

from vaultdr.config.settings import DRConfig
from vaultdr.containers.manager import ContainerManager
from vaultdr.monitoring.alerts import Notifier
from vaultdr.secrets.manager import SecretManager
from vaultdr.utils.errors import IntegrityError, PreconditionError, VaultDRError
from vaultdr.utils.files import create_tar_gz, human_size, scratch_workspace
from vaultdr.utils.locking import RunLock

from . import database
from .manifest import ArchiveBuilder, sidecar_paths
from .models import BackupOutcome, BackupStatus, ReplicationStatus
from .producers import (
    ConfigurationProducer,
    DatabaseProducer,
    DataDirectoryProducer,
    SystemInfoProducer,
    TLSProducer,
    dump_filename,
)
from .storage import BackupStorage, RemoteReplicator
from .strategies import ContainerDump, DirectDump, dump_chain, run_strategy_chain

logger = logging.getLogger(__name__)

FULL_BACKUP_PREFIX = "vaultwarden_sqlite_full_"
FILES_BACKUP_PREFIX = "vaultwarden-files-backup-"

# Failures the orchestrator turns into a FAILED outcome
STAGE_ERRORS = (VaultDRError, OSError, ValueError, sqlite3.Error)


class BackupManager:
    """Runs full and database-only backups.

    This is the only backup component that sends notifications; producers,
    the builder and the replicator return results or raise.
    """

    def __init__(
        self,
        config: DRConfig,
        containers: Optional[ContainerManager] = None,
        secrets: Optional[SecretManager] = None,
        notifier: Optional[Notifier] = None,
        verbose: bool = False,
    ):
        """
        Initialize backup manager.

        Args:
            config: Effective configuration
            containers: Docker access (created lazily when omitted)
            secrets: Passphrase and encryption handling
            notifier: Notification sink
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose
        self.containers = containers or ContainerManager(verbose=verbose)
        self.secrets = secrets or SecretManager(config, verbose=verbose)
        self.notifier = notifier or Notifier(config, verbose=verbose)
        self.storage = BackupStorage(config, verbose=verbose)
        self.replicator = RemoteReplicator(config, verbose=verbose)
        self.builder = ArchiveBuilder(verbose=verbose)

    def _too_recent(self, force: bool, age_hours: Optional[float]) -> Optional[str]:
        min_interval = self.config.backup.min_interval_hours
        if force or not min_interval or age_hours is None or age_hours >= min_interval:
            return None
        return f"last backup is {age_hours:.1f}h old (minimum interval {min_interval}h); use --force to run anyway"

    def run_backup(self, force: bool = False) -> BackupOutcome:
        """
        Produce, bundle and replicate one full backup.

        Args:
            force: Ignore the minimum interval between backups

        Returns:
            BackupOutcome: SUCCESS, PARTIAL (replication failed) or FAILED

        Raises:
            LockError: If another backup or restore is running
        """
        skipped = self._too_recent(force, self.storage.newest_backup_age_hours())
        if skipped:
            logger.info("Skipping backup: %s", skipped)
            return BackupOutcome(BackupStatus.SUCCESS, skipped_reason=skipped)

        with RunLock(self.config.paths.lock_file, "backup"):
            return self._run_full_backup()

    def _run_full_backup(self) -> BackupOutcome:
        started = time.monotonic()
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = f"{FULL_BACKUP_PREFIX}{timestamp}"
        logger.info("Starting full backup %s", name)

        producers = [
            ("DATABASE", DatabaseProducer(self.config, dump_chain(self.config, self.containers, self.secrets))),
            ("DATA_DIRECTORIES", DataDirectoryProducer(self.config)),
            ("CONFIGURATION", ConfigurationProducer(self.config)),
            ("TLS", TLSProducer(self.config)),
        ]

        stage = "PREPARE"
        try:
            with scratch_workspace(prefix=f"{name}-", root=self.config.paths.scratch_root) as staging:
                components: List[str] = []
                for stage, producer in producers:
                    logger.info("Stage %s", stage)
                    member = producer.produce(staging, timestamp)
                    if member:
                        components.append(member)

                stage = "SYSTEM_INFO"
                components.append(SystemInfoProducer(self.config).produce(staging, timestamp, name=name))

                stage = "BUNDLE"
                archive = self.builder.build(name, staging, components, self.config.paths.backup_dir)
        except STAGE_ERRORS as e:
            return self._failed("backup_failed", stage, e, started, name=name)
        except Exception as e:
            logger.exception("Unexpected error at stage %s", stage)
            self._failed("backup_failed", stage, e, started, name=name)
            raise

        files = [archive.path] + [p for p in sidecar_paths(archive.path).values() if os.path.exists(p)]
        replication = self.replicator.upload(files, subdir="full")
        if replication.status == ReplicationStatus.UPLOADED:
            archive = dataclasses.replace(archive, remote_uri=replication.remote_uri)

        self._apply_retention()

        status = BackupStatus.PARTIAL if replication.status == ReplicationStatus.FAILED else BackupStatus.SUCCESS
        outcome = BackupOutcome(
            status=status,
            archive=archive,
            duration_seconds=round(time.monotonic() - started, 2),
            replication=replication,
            artifacts=files,
        )

        data = {
            "backup_name": archive.name,
            "size": human_size(archive.size_bytes),
            "duration_seconds": outcome.duration_seconds,
            "components": list(archive.components),
            "remote": replication.remote_uri or "not configured",
        }
        if status == BackupStatus.PARTIAL:
            data["replication_error"] = replication.error
            self.notifier.notify("backup_partial", data)
        else:
            self.notifier.notify("backup_success", data)
        return outcome

    def run_database_backup(self, force: bool = False) -> BackupOutcome:
        """
        Dump, compress, encrypt, verify and store the database alone.

        Args:
            force: Ignore the minimum interval between backups

        Returns:
            BackupOutcome: With artifacts listing the stored files
        """
        backups = self.storage.list_database_backups(locations=[self.config.paths.db_backup_dir])
        age = backups[0].age_hours() if backups else None
        skipped = self._too_recent(force, age)
        if skipped:
            logger.info("Skipping database backup: %s", skipped)
            return BackupOutcome(BackupStatus.SUCCESS, skipped_reason=skipped)

        with RunLock(self.config.paths.lock_file, "database backup"):
            return self._run_database_backup()

    def _run_database_backup(self) -> BackupOutcome:
        started = time.monotonic()
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        encryption = self.config.backup.encryption
        destination = self.config.paths.db_backup_dir
        stored: List[str] = []

        stage = "DATABASE"
        try:
            if not os.path.exists(self.config.paths.database):
                raise PreconditionError(f"Database not found: {self.config.paths.database}")
            if encryption != "none":
                self.secrets.resolve_passphrase(required=True)

            with scratch_workspace(prefix="db-backup-", root=self.config.paths.scratch_root) as scratch:
                sql_path = os.path.join(scratch, dump_filename(timestamp))
                chain = [DirectDump(self.config), ContainerDump(self.config, self.containers)]
                run_strategy_chain("database dump", chain, lambda s: s.dump(sql_path))

                stage = "PROTECT"
                protected = self.secrets.protect_database_backup(sql_path, scratch, encryption)

                stage = "VERIFY"
                self._verify_database_backup(protected)

                results = [protected]
                if self.config.backup.include_files:
                    stage = "FILES"
                    results.append(self._files_backup(scratch, timestamp))

                stage = "STORE"
                os.makedirs(destination, exist_ok=True)
                for path in results:
                    target = os.path.join(destination, os.path.basename(path))
                    shutil.move(path, target)
                    stored.append(target)
        except STAGE_ERRORS as e:
            return self._failed("db_backup_failed", stage, e, started)
        except Exception as e:
            logger.exception("Unexpected error at stage %s", stage)
            self._failed("db_backup_failed", stage, e, started)
            raise

        replication = self.replicator.upload(stored, subdir=datetime.now().strftime("%Y/%m"))
        self._apply_retention()

        status = BackupStatus.PARTIAL if replication.status == ReplicationStatus.FAILED else BackupStatus.SUCCESS
        outcome = BackupOutcome(
            status=status,
            duration_seconds=round(time.monotonic() - started, 2),
            replication=replication,
            artifacts=stored,
        )
        data = {
            "files": [os.path.basename(p) for p in stored],
            "size": human_size(sum(os.path.getsize(p) for p in stored)),
            "encryption": encryption,
            "duration_seconds": outcome.duration_seconds,
            "remote": replication.remote_uri or "not configured",
        }
        if status == BackupStatus.PARTIAL:
            data["replication_error"] = replication.error
        self.notifier.notify("db_backup_partial" if status == BackupStatus.PARTIAL else "db_backup_success", data)
        return outcome

    def _verify_database_backup(self, path: str) -> None:
        """Round-trip the protected file back to SQL and load it."""
        with scratch_workspace(prefix="db-verify-", root=self.config.paths.scratch_root) as scratch:
            sql_path = os.path.join(scratch, "verify.sql")
            self.secrets.unwrap_database_backup(path, sql_path, scratch)
            inspection = database.inspect_dump(sql_path, scratch, self.config.validation.essential_tables)
            if inspection.placeholder:
                raise IntegrityError("Backup verification failed: dump contains no tables")
            logger.info(
                "Verified %s: %s tables, essential present: %s",
                os.path.basename(path),
                len(inspection.tables),
                ", ".join(inspection.essential_found) or "none",
            )

    def _files_backup(self, scratch: str, timestamp: str) -> str:
        output = os.path.join(scratch, f"{FILES_BACKUP_PREFIX}{timestamp}.tar.gz")
        producer = DataDirectoryProducer(self.config)
        data_dir = self.config.paths.data_dir
        create_tar_gz(output, os.path.dirname(data_dir), [os.path.basename(data_dir)], producer.excludes())
        return output

    def _apply_retention(self) -> None:
        try:
            removed = self.storage.cleanup()
        except OSError as e:
            logger.warning("Retention cleanup failed: %s", e)
            return
        if removed:
            logger.info("Retention removed %s file(s)", len(removed))

    def _failed(self, event: str, stage: str, error: Exception, started: float, name: str = "") -> BackupOutcome:
        message = error.message if isinstance(error, VaultDRError) else str(error)
        details = error.details if isinstance(error, VaultDRError) else None
        logger.error("Backup failed at stage %s: %s", stage, message)
        outcome = BackupOutcome(
            status=BackupStatus.FAILED,
            failed_stage=stage,
            error=message if not details else f"{message}\n{details}",
            duration_seconds=round(time.monotonic() - started, 2),
        )
        data = {"stage": stage, "error": outcome.error, "duration_seconds": outcome.duration_seconds}
        if name:
            data["backup_name"] = name
        self.notifier.notify(event, data)
        return outcome
