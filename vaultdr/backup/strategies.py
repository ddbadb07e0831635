"""Tiered database dump and restore strategies.

Each chain is an ordered list of strategies tried in turn. The first success
wins; when all fail the reasons are raised together as StrategyChainError.
"""

import fnmatch
import logging
import os
import sqlite3
import time
from typing import Callable, List, Optional, TypeVar

from vaultdr.config.settings import DRConfig
from vaultdr.containers.manager import ContainerManager
from vaultdr.secrets.manager import SecretManager
from vaultdr.utils.errors import DockerError, StrategyChainError, VaultDRError
from vaultdr.utils.files import remove_path

from . import database

logger = logging.getLogger(__name__)

T = TypeVar("T")

HELPER_BACKUP_PATTERN = "*sqlite*backup*.sql*"


class StrategyUnavailable(VaultDRError):
    """Raised when a strategy's prerequisites are absent on this host."""

    pass


class DumpStrategy:
    """Produces a logical SQL dump of the protected database."""

    name = "dump"

    def dump(self, output_path: str) -> None:
        raise NotImplementedError


class RestoreStrategy:
    """Replaces the protected database with the contents of a SQL dump."""

    name = "restore"

    def restore(self, dump_path: str, db_path: str) -> None:
        raise NotImplementedError


def run_strategy_chain(operation: str, strategies: List[T], attempt: Callable[[T], None]) -> T:
    """
    Try strategies in order until one succeeds.

    Args:
        operation: Name used in logs and the aggregate error
        strategies: Ordered strategies
        attempt: Callable invoked with each strategy; raising means failure

    Returns:
        The strategy that succeeded

    Raises:
        StrategyChainError: If every strategy failed
    """
    failures = []
    for strategy in strategies:
        try:
            attempt(strategy)
        except (VaultDRError, OSError, sqlite3.Error) as e:
            reason = e.message if isinstance(e, VaultDRError) else str(e)
            logger.warning("%s via %s failed: %s", operation, strategy.name, reason)
            failures.append((strategy.name, reason))
            continue
        logger.info("%s completed via %s", operation, strategy.name)
        return strategy
    raise StrategyChainError(operation, failures)


class HelperServiceDump(DumpStrategy):
    """Delegates to the already-running backup helper container."""

    name = "helper-service"

    def __init__(self, config: DRConfig, containers: ContainerManager, secrets: SecretManager):
        self.config = config
        self.containers = containers
        self.secrets = secrets

    def dump(self, output_path: str) -> None:
        service = self.config.services.backup_helper
        if not self.containers.is_available() or not self.containers.is_running(service):
            raise StrategyUnavailable(f"backup helper '{service}' is not running")

        started = time.time()
        exit_code, stderr = self.containers.exec_in_service(
            service, [self.config.services.helper_script, "--force"]
        )
        if exit_code != 0:
            raise VaultDRError(
                f"helper backup script exited with {exit_code}",
                details=stderr.decode("utf-8", errors="replace").strip(),
            )

        produced = self._newest_backup(since=started - 1)
        if produced is None:
            raise VaultDRError(f"helper produced no backup in {self.config.paths.db_backup_dir}")

        self.secrets.unwrap_database_backup(produced, output_path, os.path.dirname(output_path))

    def _newest_backup(self, since: float) -> Optional[str]:
        directory = self.config.paths.db_backup_dir
        if not os.path.isdir(directory):
            return None
        candidates = []
        for name in fnmatch.filter(os.listdir(directory), HELPER_BACKUP_PATTERN):
            path = os.path.join(directory, name)
            mtime = os.path.getmtime(path)
            if os.path.isfile(path) and mtime >= since:
                candidates.append((mtime, path))
        return max(candidates)[1] if candidates else None


class DirectDump(DumpStrategy):
    """Dumps through the sqlite3 module against the database file."""

    name = "direct"

    def __init__(self, config: DRConfig):
        self.config = config

    def dump(self, output_path: str) -> None:
        try:
            database.dump_database(self.config.paths.database, output_path)
        except BaseException:
            remove_path(output_path)
            raise


class ContainerDump(DumpStrategy):
    """Dumps by running the sqlite3 CLI inside the application container."""

    name = "container"

    def __init__(self, config: DRConfig, containers: ContainerManager):
        self.config = config
        self.containers = containers

    def dump(self, output_path: str) -> None:
        service = self.config.services.app
        if not self.containers.is_available():
            raise StrategyUnavailable("docker is not available")
        command = ["sqlite3", self.config.services.container_db_path, ".dump"]
        try:
            exit_code, stderr = self.containers.exec_in_service(service, command, output_path=output_path)
        except DockerError:
            remove_path(output_path)
            raise
        if exit_code != 0:
            remove_path(output_path)
            raise VaultDRError(
                f"sqlite3 .dump in '{service}' exited with {exit_code}",
                details=stderr.decode("utf-8", errors="replace").strip(),
            )


class DirectRestore(RestoreStrategy):
    """Loads the dump into a side file and renames it over the database."""

    name = "direct"

    def restore(self, dump_path: str, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        staging = db_path + ".restoring"
        database.remove_database_files(staging)
        try:
            database.load_dump(dump_path, staging)
            os.replace(staging, db_path)
        finally:
            database.remove_database_files(staging)


class ContainerRestore(RestoreStrategy):
    """Loads the dump with the sqlite3 CLI from the application image."""

    name = "container"

    def __init__(self, config: DRConfig, containers: ContainerManager):
        self.config = config
        self.containers = containers

    def restore(self, dump_path: str, db_path: str) -> None:
        if not self.containers.is_available():
            raise StrategyUnavailable("docker is not available")
        container_dump = f"/tmp/{os.path.basename(dump_path)}"
        command = ["sqlite3", self.config.services.container_db_path, f".read {container_dump}"]
        exit_code, logs = self.containers.run_oneoff(self.config.services.app, command, files=[dump_path])
        if exit_code != 0:
            raise VaultDRError(
                f"sqlite3 .read in '{self.config.services.app}' image exited with {exit_code}",
                details=logs.decode("utf-8", errors="replace").strip(),
            )
        if not os.path.exists(db_path):
            raise VaultDRError(f"container restore did not produce {db_path}")


def dump_chain(config: DRConfig, containers: ContainerManager, secrets: SecretManager) -> List[DumpStrategy]:
    return [
        HelperServiceDump(config, containers, secrets),
        DirectDump(config),
        ContainerDump(config, containers),
    ]


def restore_chain(config: DRConfig, containers: ContainerManager) -> List[RestoreStrategy]:
    return [DirectRestore(), ContainerRestore(config, containers)]
