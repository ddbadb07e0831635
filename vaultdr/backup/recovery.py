"""Staged restoration of a full backup onto this host."""

import logging
import os
import sqlite3
from typing import Callable, Dict, List, Optional, Tuple

from dotenv import dotenv_values

from vaultdr.config.settings import DRConfig
from vaultdr.containers.manager import ContainerManager
from vaultdr.utils.errors import (
    IntegrityError,
    PreconditionError,
    VaultDRError,
    create_error_suggestions,
)
from vaultdr.utils.files import FileManager, safe_extract, scratch_workspace
from vaultdr.utils.locking import RunLock

from . import database
from .models import RestorePlan, RestoreStage, StageState
from .producers import CONFIG_ARCHIVE, DATA_ARCHIVE, TLS_ARCHIVE, is_dump_member
from .strategies import restore_chain, run_strategy_chain
from .validator import BackupValidator

logger = logging.getLogger(__name__)

STAGE_ERRORS = (VaultDRError, OSError, ValueError, sqlite3.Error)

REQUIRED_SETTINGS = ("DOMAIN_NAME", "APP_DOMAIN", "ADMIN_TOKEN")
LEGACY_SETTINGS = ("MARIADB_ROOT_PASSWORD", "MARIADB_PASSWORD", "REDIS_PASSWORD")


def check_settings(values: Dict[str, Optional[str]]) -> List[str]:
    """
    Report configuration drift in restored settings.

    Args:
        values: Parsed settings.env

    Returns:
        List[str]: Advisories (never errors)
    """
    advisories = []
    for key in REQUIRED_SETTINGS:
        if not values.get(key):
            advisories.append(f"settings.env: {key} is not set")

    database_url = values.get("DATABASE_URL")
    if database_url and "sqlite" not in database_url.lower():
        advisories.append(f"settings.env: DATABASE_URL does not point at SQLite ({database_url})")

    legacy = [key for key in LEGACY_SETTINGS if values.get(key)]
    if legacy:
        advisories.append(f"settings.env: legacy settings from a previous stack remain: {', '.join(legacy)}")

    workers = values.get("ROCKET_WORKERS")
    if workers and workers.strip() != "1":
        advisories.append(f"settings.env: ROCKET_WORKERS={workers}; 1 is recommended for SQLite")

    if not values.get("WEBSOCKET_ENABLED"):
        advisories.append("settings.env: WEBSOCKET_ENABLED is not set")

    return advisories


class _RestoreRun:
    """Per-invocation state shared between stage handlers."""

    def __init__(self, archive_path: str, scratch: str):
        self.archive_path = archive_path
        self.scratch = scratch
        self.extract_dir = os.path.join(scratch, "archive")
        self.members: List[str] = []

    def component(self, name: str) -> Optional[str]:
        path = os.path.join(self.extract_dir, name)
        return path if os.path.exists(path) else None


class RecoveryManager:
    """Restores a full archive stage by stage.

    Stages run in a fixed order and the run stops at the first hard failure.
    Optional components degrade their stage to SKIPPED; configuration drift
    only produces advisories.
    """

    def __init__(
        self,
        config: DRConfig,
        containers: Optional[ContainerManager] = None,
        verbose: bool = False,
    ):
        """
        Initialize recovery manager.

        Args:
            config: Effective configuration
            containers: Docker access for the running-service check and fallback restore
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose
        self.containers = containers or ContainerManager(verbose=verbose)
        self.validator = BackupValidator(config, verbose=verbose)
        self.files = FileManager(verbose=verbose)

    def check_preconditions(self, archive_path: str, allow_running: bool = False) -> None:
        """
        Raises:
            PreconditionError: If the archive is missing or the service is running
        """
        if not os.path.isfile(archive_path):
            raise PreconditionError(
                f"Archive not found: {archive_path}",
                suggestions=create_error_suggestions("no_backups_found"),
            )

        if allow_running:
            return

        app = self.config.services.app
        if self.containers.is_available() and self.containers.is_running(app):
            raise PreconditionError(
                f"Service '{app}' is running; stop it before restoring",
                suggestions=create_error_suggestions("service_running"),
            )

    def restore(self, archive_path: str, allow_running: bool = False) -> RestorePlan:
        """
        Restore an archive onto this host.

        Args:
            archive_path: Full backup archive
            allow_running: Skip the stopped-service precondition

        Returns:
            RestorePlan: Stage states and advisories

        Raises:
            PreconditionError: If preconditions are not met
            LockError: If another backup or restore is running
        """
        archive_path = os.path.abspath(archive_path)
        self.check_preconditions(archive_path, allow_running=allow_running)

        plan = RestorePlan.for_archive(archive_path)
        with RunLock(self.config.paths.lock_file, "restore"):
            with scratch_workspace(prefix="restore-", root=self.config.paths.scratch_root) as scratch:
                run = _RestoreRun(archive_path, scratch)
                for stage, handler in self._handlers():
                    status = plan.status(stage)
                    status.state = StageState.RUNNING
                    logger.info("Stage %s", stage.value)
                    try:
                        status.state, status.detail = handler(run, plan)
                    except STAGE_ERRORS as e:
                        message = e.message if isinstance(e, VaultDRError) else str(e)
                        details = e.details if isinstance(e, VaultDRError) else None
                        status.state = StageState.FAILED
                        status.detail = f"{message}: {details}" if details else message
                        logger.error("Restore stopped at %s: %s", stage.value, status.detail)
                        break
                    except Exception as e:
                        status.state = StageState.FAILED
                        status.detail = f"{type(e).__name__}: {e}"
                        logger.exception("Unexpected error at restore stage %s", stage.value)
                        raise

        return plan

    def _handlers(self) -> List[Tuple[RestoreStage, Callable[[_RestoreRun, RestorePlan], Tuple[StageState, str]]]]:
        return [
            (RestoreStage.VALIDATE, self._validate),
            (RestoreStage.EXTRACT, self._extract),
            (RestoreStage.RESTORE_DATA_DIRS, self._restore_data_dirs),
            (RestoreStage.RESTORE_DATABASE, self._restore_database),
            (RestoreStage.RESTORE_CONFIG, self._restore_config),
            (RestoreStage.RESTORE_TLS, self._restore_tls),
            (RestoreStage.FIX_PERMISSIONS, self._fix_permissions),
            (RestoreStage.VERIFY_CONFIG, self._verify_config),
        ]

    def _validate(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        report = self.validator.validate(run.archive_path, deep=False)
        if report.failures:
            raise IntegrityError(
                "Archive failed validation",
                details="; ".join(f"{c.name}: {c.detail}" for c in report.failures),
                suggestions=create_error_suggestions("integrity_failed"),
            )
        for warning in report.warnings:
            plan.advisories.append(f"validation: {warning.name}: {warning.detail}")
        return StageState.DONE, f"{len(report.checks)} checks passed"

    def _extract(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        run.members = safe_extract(run.archive_path, run.extract_dir)
        return StageState.DONE, f"{len(run.members)} components"

    def _restore_data_dirs(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        archive = run.component(DATA_ARCHIVE)
        if archive is None:
            raise IntegrityError(f"{DATA_ARCHIVE} missing from archive")
        target = os.path.dirname(self.config.paths.data_dir)
        restored = safe_extract(archive, target)
        return StageState.DONE, f"{len(restored)} entries into {self.config.paths.data_dir}"

    def _restore_database(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        dumps = [name for name in run.members if is_dump_member(name)]
        if not dumps:
            plan.advisories.append("No database dump in archive; database not restored")
            return StageState.SKIPPED, "no dump"

        dump_path = os.path.join(run.extract_dir, dumps[0])
        has_schema, _ = database.scan_dump(dump_path)
        if not has_schema:
            plan.advisories.append("Database dump is a placeholder; the service will create an empty database")
            return StageState.SKIPPED, "placeholder dump"

        db_path = self.config.paths.database
        removed = database.remove_database_files(db_path)
        if removed:
            logger.info("Removed existing database files: %s", ", ".join(os.path.basename(p) for p in removed))

        strategy = run_strategy_chain(
            "database restore",
            restore_chain(self.config, self.containers),
            lambda s: s.restore(dump_path, db_path),
        )

        ok, result = database.integrity_check(db_path)
        if not ok:
            raise IntegrityError("Restored database failed integrity check", details=result)
        conn = database.open_readonly(db_path)
        try:
            tables = database.list_tables(conn)
        finally:
            conn.close()
        if not tables:
            raise IntegrityError("Restored database has no tables")

        return StageState.DONE, f"{len(tables)} tables restored via {strategy.name}"

    def _restore_config(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        archive = run.component(CONFIG_ARCHIVE)
        if archive is None:
            raise IntegrityError(f"{CONFIG_ARCHIVE} missing from archive")

        settings = self.config.paths.settings_file
        if os.path.exists(settings):
            saved = self.files.backup_file(settings)
            logger.info("Saved current settings.env to %s", os.path.basename(saved))

        restored = safe_extract(archive, self.config.paths.project_root)
        self.files.make_scripts_executable(self.config.paths.project_root)
        return StageState.DONE, f"{len(restored)} entries"

    def _restore_tls(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        archive = run.component(TLS_ARCHIVE)
        if archive is None:
            plan.advisories.append("No TLS material in archive; certificates will be issued on first start")
            return StageState.SKIPPED, "not included"
        try:
            restored = safe_extract(archive, self.config.paths.data_dir)
        except IntegrityError as e:
            plan.advisories.append(f"TLS material not restored: {e.message}")
            return StageState.SKIPPED, "corrupt"
        return StageState.DONE, f"{len(restored)} entries"

    def _fix_permissions(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        uid, gid = self.config.permissions.uid, self.config.permissions.gid
        data_dir = self.config.paths.data_dir
        db_path = self.config.paths.database
        problems = []

        if hasattr(os, "geteuid") and os.geteuid() != 0 and os.geteuid() != uid:
            problems.append(f"not running as root; ownership left unchanged (expected {uid}:{gid})")
        elif os.path.isdir(data_dir):
            problems.extend(self.files.set_ownership(data_dir, uid, gid))

        for path, mode in ((data_dir, 0o755), (db_path, 0o644)):
            if os.path.exists(path):
                try:
                    self.files.set_file_permissions(path, mode)
                except OSError as e:
                    problems.append(f"chmod {oct(mode)} {path}: {e}")

        for problem in problems[:10]:
            plan.advisories.append(f"permissions: {problem}")
        if len(problems) > 10:
            plan.advisories.append(f"permissions: {len(problems) - 10} more paths could not be changed")
        return StageState.DONE, "normalized" if not problems else f"{len(problems)} issue(s)"

    def _verify_config(self, run: _RestoreRun, plan: RestorePlan) -> Tuple[StageState, str]:
        settings = self.config.paths.settings_file
        if not os.path.exists(settings):
            plan.advisories.append("settings.env not present after restore")
            return StageState.DONE, "settings.env missing"
        advisories = check_settings(dotenv_values(settings))
        plan.advisories.extend(advisories)
        return StageState.DONE, f"{len(advisories)} advisories"
