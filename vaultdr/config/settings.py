"""Immutable runtime configuration built once at process start."""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

ESSENTIAL_TABLES = ("users", "organizations", "ciphers", "collections")

DEFAULT_CONFIG_ITEMS = (
    "settings.env",
    "docker-compose.yml",
    "caddy",
    "fail2ban",
    "config",
    "lib",
    "backup",
    "ddclient",
    "*.sh",
)

DEFAULT_DATA_EXCLUDES = (
    "backups",
    "backup_logs",
    "lost+found",
    "*.tmp",
    "*.lock",
    "*.sqlite3-wal",
    "*.sqlite3-shm",
    "*.backup",
    "*~",
)


@dataclass(frozen=True)
class PathsConfig:
    project_root: str
    database: str
    data_dir: str
    backup_dir: str
    db_backup_dir: str
    log_dir: str
    lock_file: str
    scratch_root: Optional[str] = None

    @property
    def settings_file(self) -> str:
        return os.path.join(self.project_root, "settings.env")


@dataclass(frozen=True)
class ServicesConfig:
    app: str = "vaultwarden"
    backup_helper: str = "bw_backup"
    container_db_path: str = "/data/bwdata/db.sqlite3"
    helper_script: str = "/usr/local/bin/db-backup.sh"


@dataclass(frozen=True)
class BackupConfig:
    retention_days: int = 30
    min_interval_hours: float = 0
    encryption: str = "none"
    include_files: bool = True
    config_items: Tuple[str, ...] = DEFAULT_CONFIG_ITEMS
    data_excludes: Tuple[str, ...] = DEFAULT_DATA_EXCLUDES
    tls_dir: str = "caddy_data"
    schedule: str = "0 3 * * 1"
    db_schedule: str = "0 2 * * *"


@dataclass(frozen=True)
class RemoteConfig:
    name: Optional[str] = None
    path: str = "vaultwarden-backups"
    retries: int = 3
    backoff_seconds: float = 10
    timeout_seconds: int = 3600
    rclone_path: str = "rclone"

    @property
    def enabled(self) -> bool:
        return bool(self.name)


@dataclass(frozen=True)
class SecretsConfig:
    passphrase: Optional[str] = field(default=None, repr=False)
    passphrase_env: str = "BACKUP_PASSPHRASE"
    secret_command: Optional[str] = None
    secret_timeout_seconds: int = 30


@dataclass(frozen=True)
class ValidationConfig:
    min_size_bytes: int = 1024 * 1024
    essential_tables: Tuple[str, ...] = ESSENTIAL_TABLES
    schedule: str = "30 3 * * 0"


@dataclass(frozen=True)
class RehearsalConfig:
    backup_locations: Tuple[str, ...] = ("data/backups", "backup/db", "backups")
    patterns: Tuple[str, ...] = ("*sqlite*backup*.sql*", "vaultwarden-*backup*.sql*")
    max_restore_seconds: float = 60
    query_timeout_seconds: float = 30
    max_backup_age_hours: float = 48
    schedule: str = "0 4 1 * *"


@dataclass(frozen=True)
class NotificationConfig:
    email: Optional[str] = None
    sendmail_path: str = "/usr/sbin/sendmail"
    sender: str = "vaultdr@localhost"


@dataclass(frozen=True)
class PermissionsConfig:
    uid: int = 1000
    gid: int = 1000


@dataclass(frozen=True)
class RebuildConfig:
    health_url: str = "http://localhost:80/alive"
    health_timeout_seconds: int = 120
    min_ram_gb: float = 5
    min_disk_gb: float = 10
    setup_script: str = "init-setup.sh"
    startup_script: str = "startup.sh"
    expected_arch: Tuple[str, ...] = ("aarch64", "arm64")


@dataclass(frozen=True)
class DRConfig:
    """Effective configuration passed to every component."""

    paths: PathsConfig
    services: ServicesConfig = ServicesConfig()
    backup: BackupConfig = BackupConfig()
    remote: RemoteConfig = RemoteConfig()
    secrets: SecretsConfig = SecretsConfig()
    validation: ValidationConfig = ValidationConfig()
    rehearsal: RehearsalConfig = RehearsalConfig()
    notifications: NotificationConfig = NotificationConfig()
    permissions: PermissionsConfig = PermissionsConfig()
    rebuild: RebuildConfig = RebuildConfig()

    def resolve(self, path: str) -> str:
        """Resolve a project-relative path."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.paths.project_root, path)

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        for section in data.values():
            for key, value in list(section.items()):
                if isinstance(value, tuple):
                    section[key] = list(value)
        if redact and data["secrets"]["passphrase"]:
            data["secrets"]["passphrase"] = "********"
        return data
