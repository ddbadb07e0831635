"""Backup discovery, retention and remote replication."""

import fnmatch
import logging
import os
import shutil
import subprocess
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from vaultdr.config.settings import DRConfig
from vaultdr.secrets.manager import detect_backup_format
from vaultdr.utils.errors import TransientIOError
from vaultdr.utils.files import remove_path

from .manifest import ARCHIVE_SUFFIX, sidecar_paths
from .models import DatabaseBackup, ReplicationResult, ReplicationStatus

logger = logging.getLogger(__name__)

FULL_BACKUP_PATTERNS = ("vaultdr_sqlite_full_*.tar.gz", "vaultwarden_sqlite_full_*.tar.gz")
FILES_BACKUP_PATTERN = "vaultwarden-files-backup-*.tar.gz"


class BackupStorage:
    """Finds local backups and applies the retention policy."""

    def __init__(self, config: DRConfig, verbose: bool = False):
        """
        Initialize backup storage manager.

        Args:
            config: Effective configuration
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose

    def full_backup_locations(self) -> List[str]:
        paths = self.config.paths
        locations = []
        for location in (paths.backup_dir, paths.db_backup_dir, paths.project_root):
            if location not in locations:
                locations.append(location)
        return locations

    def resolve_archive(self, archive: str) -> str:
        """
        Resolve an archive argument to a path.

        A bare file name that does not exist in the working directory is
        looked up in the backup locations. Unresolved names are returned as
        absolute paths so the caller reports them as missing.
        """
        if os.path.exists(archive) or os.path.dirname(archive):
            return os.path.abspath(archive)
        for location in self.full_backup_locations():
            candidate = os.path.join(location, archive)
            if os.path.isfile(candidate):
                return os.path.abspath(candidate)
        return os.path.abspath(archive)

    def list_full_backups(self) -> List[str]:
        """
        Find full archives across the known locations.

        Returns:
            List[str]: Archive paths, newest first
        """
        found = {}
        for location in self.full_backup_locations():
            if not os.path.isdir(location):
                continue
            for name in os.listdir(location):
                if any(fnmatch.fnmatch(name, pattern) for pattern in FULL_BACKUP_PATTERNS):
                    path = os.path.realpath(os.path.join(location, name))
                    if os.path.isfile(path):
                        found[path] = os.path.getmtime(path)
        return [path for path, _ in sorted(found.items(), key=lambda item: item[1], reverse=True)]

    def latest_full_backup(self) -> Optional[str]:
        backups = self.list_full_backups()
        return backups[0] if backups else None

    def list_database_backups(
        self,
        locations: Optional[Sequence[str]] = None,
        patterns: Optional[Sequence[str]] = None,
    ) -> List[DatabaseBackup]:
        """
        Find database-only backups.

        Args:
            locations: Directories to search (defaults to rehearsal locations)
            patterns: Filename globs (defaults to rehearsal patterns)

        Returns:
            List[DatabaseBackup]: Newest first by modification time
        """
        locations = locations or [self.config.resolve(p) for p in self.config.rehearsal.backup_locations]
        patterns = patterns or self.config.rehearsal.patterns
        found = {}
        for location in locations:
            if not os.path.isdir(location):
                continue
            for name in os.listdir(location):
                if name.endswith((".sha256", ".md5", ".partial")):
                    continue
                if not any(fnmatch.fnmatch(name, pattern) for pattern in patterns):
                    continue
                path = os.path.realpath(os.path.join(location, name))
                if not os.path.isfile(path) or path in found:
                    continue
                stat = os.stat(path)
                found[path] = DatabaseBackup(
                    path=path,
                    size_bytes=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime),
                    format=detect_backup_format(path),
                )
        return sorted(found.values(), key=lambda b: b.modified, reverse=True)

    def newest_backup_age_hours(self) -> Optional[float]:
        """Age of the newest full archive, used by the min-interval check."""
        latest = self.latest_full_backup()
        if latest is None:
            return None
        modified = datetime.fromtimestamp(os.path.getmtime(latest))
        return (datetime.now() - modified).total_seconds() / 3600

    def cleanup(self, days: Optional[int] = None, dry_run: bool = False) -> List[str]:
        """
        Delete backups older than the retention period.

        Args:
            days: Retention in days (defaults to backup.retention_days)
            dry_run: Only report what would be removed

        Returns:
            List[str]: Removed (or removable) paths
        """
        days = days if days is not None else self.config.backup.retention_days
        cutoff = datetime.now() - timedelta(days=days)
        removed = []

        candidates = list(self.list_full_backups())
        db_dir = self.config.paths.db_backup_dir
        candidates.extend(b.path for b in self.list_database_backups(locations=[db_dir]))
        if os.path.isdir(db_dir):
            candidates.extend(
                os.path.join(db_dir, name) for name in os.listdir(db_dir) if fnmatch.fnmatch(name, FILES_BACKUP_PATTERN)
            )

        for path in candidates:
            if datetime.fromtimestamp(os.path.getmtime(path)) >= cutoff:
                continue
            targets = [path]
            if path.endswith(ARCHIVE_SUFFIX):
                targets.extend(p for p in sidecar_paths(path).values() if os.path.exists(p))
            for target in targets:
                if not dry_run:
                    remove_path(target)
                removed.append(target)
            logger.info("%s expired backup %s", "Would remove" if dry_run else "Removed", os.path.basename(path))

        return removed


class RemoteReplicator:
    """Copies backups to an rclone remote with bounded, fixed-backoff retries."""

    def __init__(self, config: DRConfig, verbose: bool = False):
        self.config = config
        self.remote = config.remote
        self.verbose = verbose

    def remote_base(self) -> str:
        return f"{self.remote.name}:{self.remote.path.strip('/')}"

    def upload(self, files: List[str], subdir: str = "full") -> ReplicationResult:
        """
        Upload files to <remote>:<path>/<subdir>/.

        Args:
            files: Local files (archive first, then sidecars)
            subdir: Remote sub-path

        Returns:
            ReplicationResult: SKIPPED when no remote is configured, FAILED after
            retries are exhausted
        """
        if not self.remote.enabled:
            logger.info("No remote storage configured, skipping upload")
            return ReplicationResult(ReplicationStatus.SKIPPED)

        if shutil.which(self.remote.rclone_path) is None and not os.path.exists(self.remote.rclone_path):
            return ReplicationResult(ReplicationStatus.FAILED, error="rclone is not installed")

        destination = f"{self.remote_base()}/{subdir.strip('/')}/"
        attempts = 0
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.remote.retries),
                wait=wait_fixed(self.remote.backoff_seconds),
                retry=retry_if_exception_type(TransientIOError),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        logger.warning("Retrying upload to %s (attempt %s/%s)", destination, attempts, self.remote.retries)
                    for path in files:
                        self._copy(path, destination)
        except TransientIOError as e:
            logger.error("Upload to %s failed after %s attempts: %s", destination, attempts, e.message)
            return ReplicationResult(ReplicationStatus.FAILED, remote_uri=destination, attempts=attempts, error=e.message)

        logger.info("Uploaded %s file(s) to %s", len(files), destination)
        return ReplicationResult(ReplicationStatus.UPLOADED, remote_uri=destination, attempts=attempts)

    def _copy(self, path: str, destination: str) -> None:
        command = [self.remote.rclone_path, "copy", path, destination]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.remote.timeout_seconds)
        except subprocess.TimeoutExpired as e:
            raise TransientIOError(f"rclone timed out uploading {os.path.basename(path)}") from e
        if result.returncode != 0:
            raise TransientIOError(
                f"rclone failed uploading {os.path.basename(path)}",
                details=result.stderr.strip(),
            )
