"""Snapshot producers, one per category of durable state.

Producers write into the run's staging directory only. They never touch the
protected service and leave no partial output behind when they fail.
"""

import logging
import os
import platform
import shutil
import subprocess
from datetime import datetime
from typing import List, Optional

from dotenv import dotenv_values

from vaultdr import __version__
from vaultdr.config.settings import DRConfig
from vaultdr.templates import render_template
from vaultdr.utils.files import FileManager, create_tar_gz, remove_path

from . import database
from .strategies import DumpStrategy, run_strategy_chain

logger = logging.getLogger(__name__)

DUMP_PREFIX = "vaultwarden-sqlite-backup-"
DATA_ARCHIVE = "data_directories.tar.gz"
CONFIG_ARCHIVE = "configuration.tar.gz"
TLS_ARCHIVE = "ssl_certificates.tar.gz"
SYSTEM_INFO = "system_info.txt"

SETTINGS_SUMMARY_KEYS = (
    "DOMAIN_NAME",
    "APP_DOMAIN",
    "DATABASE_URL",
    "ROCKET_WORKERS",
    "WEBSOCKET_ENABLED",
    "SIGNUPS_ALLOWED",
    "BACKUP_REMOTE",
)


def dump_filename(timestamp: str) -> str:
    return f"{DUMP_PREFIX}{timestamp}.sql"


def is_dump_member(name: str) -> bool:
    return os.path.basename(name).startswith(DUMP_PREFIX) and ".sql" in name


class DatabaseProducer:
    """Captures a logical dump through the tiered dump strategies."""

    component = "database"

    def __init__(self, config: DRConfig, strategies: List[DumpStrategy]):
        self.config = config
        self.strategies = strategies

    def produce(self, staging_dir: str, timestamp: str) -> str:
        """
        Write the dump into the staging directory.

        A missing database is the fresh-install case and yields a placeholder.

        Returns:
            str: Member name of the dump

        Raises:
            StrategyChainError: If every dump strategy failed
        """
        name = dump_filename(timestamp)
        output = os.path.join(staging_dir, name)

        if not os.path.exists(self.config.paths.database):
            logger.warning("Database not found at %s, writing placeholder dump", self.config.paths.database)
            database.write_placeholder_dump(output, self.config.paths.database)
            return name

        try:
            run_strategy_chain("database dump", self.strategies, lambda s: s.dump(output))
        except BaseException:
            remove_path(output)
            raise
        return name


class DataDirectoryProducer:
    """Archives the data directory without the live database files."""

    component = "data_directories"

    def __init__(self, config: DRConfig):
        self.config = config

    def excludes(self) -> List[str]:
        data_dir = self.config.paths.data_dir
        base = os.path.dirname(data_dir)
        excludes = list(self.config.backup.data_excludes)
        db_rel = os.path.relpath(self.config.paths.database, base)
        excludes.extend([db_rel, db_rel + "-wal", db_rel + "-shm", db_rel + "-journal"])
        for extra in (self.config.paths.db_backup_dir, self.config.paths.log_dir):
            excludes.append(os.path.relpath(extra, base))
        return excludes

    def produce(self, staging_dir: str, timestamp: str) -> str:
        data_dir = self.config.paths.data_dir
        output = os.path.join(staging_dir, DATA_ARCHIVE)
        if not os.path.isdir(data_dir):
            logger.warning("Data directory %s not found, archiving nothing", data_dir)
        create_tar_gz(output, os.path.dirname(data_dir), [os.path.basename(data_dir)], self.excludes())
        return DATA_ARCHIVE


class ConfigurationProducer:
    """Archives runtime configuration from the project root."""

    component = "configuration"

    def __init__(self, config: DRConfig):
        self.config = config

    def produce(self, staging_dir: str, timestamp: str) -> str:
        output = os.path.join(staging_dir, CONFIG_ARCHIVE)
        added = create_tar_gz(
            output,
            self.config.paths.project_root,
            list(self.config.backup.config_items),
            excludes=["*.backup", "*.backup.*", "*~"],
        )
        if "settings.env" not in added:
            logger.warning("settings.env not found in %s", self.config.paths.project_root)
        logger.debug("Configuration items archived: %s", ", ".join(added) or "none")
        return CONFIG_ARCHIVE


class TLSProducer:
    """Archives TLS material when present."""

    component = "ssl_certificates"

    def __init__(self, config: DRConfig):
        self.config = config

    def produce(self, staging_dir: str, timestamp: str) -> Optional[str]:
        tls_dir = os.path.join(self.config.paths.data_dir, self.config.backup.tls_dir)
        if not os.path.isdir(tls_dir):
            logger.info("No TLS material at %s, skipping", tls_dir)
            return None
        create_tar_gz(os.path.join(staging_dir, TLS_ARCHIVE), self.config.paths.data_dir, [self.config.backup.tls_dir])
        return TLS_ARCHIVE


class SystemInfoProducer:
    """Writes a plain-text snapshot of the host and database."""

    component = "system_info"

    def __init__(self, config: DRConfig):
        self.config = config
        self.files = FileManager()

    def produce(self, staging_dir: str, timestamp: str, name: str = "") -> str:
        db_path = self.config.paths.database
        db_info = {"path": db_path, "present": os.path.exists(db_path)}
        if db_info["present"]:
            db_info["size"] = os.path.getsize(db_path)
            db_info.update(database.database_summary(db_path))

        settings_file = self.config.paths.settings_file
        settings = []
        if os.path.exists(settings_file):
            values = dotenv_values(settings_file)
            settings = [(key, values[key]) for key in SETTINGS_SUMMARY_KEYS if values.get(key)]

        components = []
        for member in sorted(os.listdir(staging_dir)):
            components.append((member, self.files.directory_size(os.path.join(staging_dir, member))))

        content = render_template(
            "system_info.txt.j2",
            created_at=datetime.now(),
            archive_name=name,
            host=host_facts(),
            database=db_info,
            settings=settings,
            components=components,
        )
        with open(os.path.join(staging_dir, SYSTEM_INFO), "w", encoding="utf-8") as f:
            f.write(content)
        return SYSTEM_INFO


def host_facts() -> dict:
    """Collect host facts for system info and rebuild checks."""
    docker_version = "not installed"
    if shutil.which("docker"):
        result = subprocess.run(["docker", "--version"], capture_output=True, text=True)
        docker_version = result.stdout.strip() if result.returncode == 0 else "unavailable"
    return {
        "hostname": platform.node(),
        "os": platform.platform(),
        "arch": platform.machine(),
        "kernel": platform.release(),
        "python": platform.python_version(),
        "docker": docker_version,
        "vaultdr": __version__,
    }
