"""Automated DR rehearsal against a throwaway copy of the newest database backup."""

import json
import logging
import os
import sqlite3
import time
from datetime import datetime
from typing import List, Optional, Tuple

from vaultdr.config.settings import DRConfig
from vaultdr.monitoring.alerts import Notifier
from vaultdr.secrets.manager import SecretManager
from vaultdr.utils.errors import IntegrityError, PreconditionError, VaultDRError, create_error_suggestions
from vaultdr.utils.files import scratch_workspace

from . import database
from .models import DatabaseBackup, DRTestReport, RehearsalVerdict
from .storage import BackupStorage

logger = logging.getLogger(__name__)

HISTORY_FILE = "dr-test-history.jsonl"


def decide_verdict(
    essential_found: int,
    essential_total: int,
    users: int,
    ciphers: int,
    integrity_passed: bool,
    queries_passed: int,
    queries_total: int,
    restore_seconds: float,
    max_restore_seconds: float,
) -> Tuple[RehearsalVerdict, List[str]]:
    """
    Grade a rehearsal.

    Returns:
        Tuple[RehearsalVerdict, List[str]]: Verdict and the reasons behind it
    """
    if essential_found < essential_total:
        return RehearsalVerdict.FAILURE, [f"only {essential_found}/{essential_total} essential tables found"]
    if not integrity_passed:
        return RehearsalVerdict.FAILURE, ["integrity check failed"]

    reasons = []
    if users == 0 and ciphers == 0:
        reasons.append("users and ciphers tables are empty")
    if queries_passed < queries_total:
        reasons.append(f"{queries_total - queries_passed}/{queries_total} test queries failed")
    if max_restore_seconds and restore_seconds > max_restore_seconds:
        reasons.append(f"restoration took {restore_seconds:.2f}s (limit {max_restore_seconds}s)")

    return (RehearsalVerdict.WARNING if reasons else RehearsalVerdict.SUCCESS), reasons


class RehearsalRunner:
    """Restores the newest database backup into scratch and grades it."""

    def __init__(
        self,
        config: DRConfig,
        secrets: Optional[SecretManager] = None,
        notifier: Optional[Notifier] = None,
        verbose: bool = False,
    ):
        self.config = config
        self.verbose = verbose
        self.secrets = secrets or SecretManager(config, verbose=verbose)
        self.notifier = notifier or Notifier(config, verbose=verbose)
        self.storage = BackupStorage(config, verbose=verbose)

    def run(self) -> DRTestReport:
        """
        Run one rehearsal. Never prompts.

        Fatal errors still produce a persisted FAILURE report.

        Returns:
            DRTestReport: The persisted report
        """
        now = datetime.now()
        report = DRTestReport(test_id=now.strftime("%Y%m%d_%H%M%S"), test_date=now)
        logger.info("Starting DR rehearsal %s", report.test_id)

        try:
            with scratch_workspace(prefix=f"dr-test-{report.test_id}-", root=self.config.paths.scratch_root) as scratch:
                self._rehearse(report, scratch)
        except (VaultDRError, OSError, ValueError, sqlite3.Error) as e:
            message = e.message if isinstance(e, VaultDRError) else str(e)
            logger.error("DR rehearsal failed: %s", message)
            report.errors.append(message)
            report.test_result = RehearsalVerdict.FAILURE
        except Exception as e:
            logger.exception("DR rehearsal crashed")
            report.errors.append(f"{type(e).__name__}: {e}")
            report.test_result = RehearsalVerdict.FAILURE
            self._persist(report)
            self._notify(report)
            raise

        self._persist(report)
        self._notify(report)
        return report

    def _find_backup(self) -> DatabaseBackup:
        backups = self.storage.list_database_backups()
        if not backups:
            locations = ", ".join(self.config.rehearsal.backup_locations)
            raise PreconditionError(
                "No database backup found for rehearsal",
                details=f"Searched: {locations}",
                suggestions=create_error_suggestions("no_backups_found"),
            )
        return backups[0]

    def _rehearse(self, report: DRTestReport, scratch: str) -> None:
        backup = self._find_backup()
        age_hours = backup.age_hours(report.test_date)
        report.backup_info = {
            "file_path": backup.path,
            "file_name": backup.name,
            "backup_size_bytes": backup.size_bytes,
            "backup_date": backup.modified.isoformat(),
            "backup_age_hours": age_hours,
            "backup_format": backup.format,
        }
        logger.info("Using %s (%s, %.1fh old)", backup.name, backup.format, age_hours)

        sql_path = os.path.join(scratch, "backup.sql")
        self.secrets.unwrap_database_backup(backup.path, sql_path, scratch)

        has_schema, has_inserts = database.scan_dump(sql_path)
        if not has_schema:
            raise IntegrityError("Backup contains no CREATE TABLE statements")
        if not has_inserts:
            report.warnings.append("Backup contains no INSERT statements")

        db_path = os.path.join(scratch, f"dr_test_{report.test_id}.sqlite3")
        started = time.perf_counter()
        database.load_dump(sql_path, db_path)
        restore_seconds = round(time.perf_counter() - started, 3)

        integrity_passed, integrity_result = database.integrity_check(db_path)
        if not integrity_passed:
            report.errors.append(f"integrity_check: {integrity_result}")

        essential = list(self.config.validation.essential_tables)
        conn = sqlite3.connect(db_path)
        try:
            tables = database.list_tables(conn)
            found = [t for t in essential if t in tables]
            counts = {t: database.count_rows(conn, t) for t in found}
            for table in essential:
                if table not in tables:
                    report.errors.append(f"essential table missing: {table}")
            self._check_emails(conn, tables, report)
            passed, total, query_seconds = self._query_battery(conn, counts, report)
        finally:
            conn.close()

        users = counts.get("users", 0)
        ciphers = counts.get("ciphers", 0)
        report.database_stats = {
            "total_tables": len(tables),
            "essential_tables_found": len(found),
            "users_count": users,
            "organizations_count": counts.get("organizations", 0),
            "ciphers_count": ciphers,
            "collections_count": counts.get("collections", 0),
        }
        report.performance = {
            "restoration_time_seconds": restore_seconds,
            "tables_validated": len(found),
            "data_integrity_passed": integrity_passed,
            "query_test_passed": passed,
            "query_test_total": total,
            "performance_test_time": query_seconds,
        }

        rehearsal = self.config.rehearsal
        verdict, reasons = decide_verdict(
            essential_found=len(found),
            essential_total=len(essential),
            users=users,
            ciphers=ciphers,
            integrity_passed=integrity_passed,
            queries_passed=passed,
            queries_total=total,
            restore_seconds=restore_seconds,
            max_restore_seconds=rehearsal.max_restore_seconds,
        )
        report.test_result = verdict
        target = report.errors if verdict == RehearsalVerdict.FAILURE else report.warnings
        target.extend(r for r in reasons if r not in target)

        if age_hours > rehearsal.max_backup_age_hours:
            report.recommendations.append(
                f"Backup is {age_hours:.0f} hours old; check that scheduled backups are running"
            )
        if users == 0:
            report.recommendations.append("No users in backup; confirm the instance has been set up")
        if rehearsal.max_restore_seconds and restore_seconds > rehearsal.max_restore_seconds:
            report.recommendations.append("Restoration is slow; consider running VACUUM on the database")

    def _check_emails(self, conn: sqlite3.Connection, tables: List[str], report: DRTestReport) -> None:
        if "users" not in tables:
            return
        try:
            invalid = conn.execute("SELECT COUNT(*) FROM users WHERE email NOT LIKE '%@%.%'").fetchone()[0]
        except sqlite3.Error as e:
            report.warnings.append(f"user email check failed: {e}")
            return
        if invalid:
            report.warnings.append(f"{invalid} user(s) with malformed email addresses")

    def _query_battery(self, conn: sqlite3.Connection, counts: dict, report: DRTestReport) -> Tuple[int, int, float]:
        queries = [
            ("table count", "SELECT COUNT(*) FROM sqlite_master WHERE type='table'"),
            ("table names", "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"),
        ]
        if counts.get("users", 0) > 0:
            queries.append(("users count", "SELECT COUNT(*) FROM users"))
        if counts.get("ciphers", 0) > 0:
            queries.append(("ciphers count", "SELECT COUNT(*) FROM ciphers"))

        timeout = self.config.rehearsal.query_timeout_seconds
        passed = 0
        started = time.perf_counter()
        for label, sql in queries:
            try:
                database.run_query(conn, sql, timeout)
                passed += 1
            except sqlite3.Error as e:
                report.warnings.append(f"query '{label}' failed: {e}")
        return passed, len(queries), round(time.perf_counter() - started, 3)

    def _persist(self, report: DRTestReport) -> None:
        log_dir = self.config.paths.log_dir
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.join(log_dir, f"sqlite-dr-test-report-{report.test_id}.json")
        data = report.to_dict()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        with open(os.path.join(log_dir, HISTORY_FILE), "a", encoding="utf-8") as f:
            f.write(json.dumps(data, separators=(",", ":")) + "\n")
        report.report_path = path
        logger.info("DR report written to %s", path)

    def _notify(self, report: DRTestReport) -> None:
        data = {
            "test_id": report.test_id,
            "result": report.test_result.value,
            "backup": report.backup_info.get("file_name", "none"),
            "backup_age_hours": report.backup_info.get("backup_age_hours", "n/a"),
            "users": report.database_stats.get("users_count", 0),
            "ciphers": report.database_stats.get("ciphers_count", 0),
            "restoration_seconds": report.performance.get("restoration_time_seconds", "n/a"),
            "report": report.report_path,
        }
        if report.errors:
            data["errors"] = report.errors
        if report.warnings:
            data["warnings"] = report.warnings
        self.notifier.notify(f"dr_test_{report.test_result.value.lower()}", data)
