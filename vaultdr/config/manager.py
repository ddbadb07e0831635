"""Configuration management for vaultdr."""

import copy
import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

from vaultdr.utils.errors import ConfigurationError, create_error_suggestions

from .settings import (
    BackupConfig,
    DRConfig,
    NotificationConfig,
    PathsConfig,
    PermissionsConfig,
    RebuildConfig,
    RehearsalConfig,
    RemoteConfig,
    SecretsConfig,
    ServicesConfig,
    ValidationConfig,
)
from .validator import ConfigValidationError, ConfigValidator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "vaultdr.yml"

DEFAULT_PATHS = {
    "database": "data/bwdata/db.sqlite3",
    "data_dir": "data",
    "backup_dir": "migration_backups",
    "db_backup_dir": "data/backups",
    "log_dir": "data/backup_logs",
    "lock_file": ".vaultdr.lock",
    "scratch_root": None,
}


def _to_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# Variable name -> (section, key, coercion)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "BACKUP_REMOTE": ("remote", "name", str),
    "BACKUP_PATH": ("remote", "path", str),
    "BACKUP_RETENTION_DAYS": ("backup", "retention_days", int),
    "BACKUP_ENCRYPTION": ("backup", "encryption", str),
    "BACKUP_INCLUDE_FILES": ("backup", "include_files", _to_bool),
    "BACKUP_SCHEDULE": ("backup", "db_schedule", str),
    "BACKUP_VERIFICATION_SCHEDULE": ("validation", "schedule", str),
    "ALERT_EMAIL": ("notifications", "email", str),
    "BACKUP_EMAIL": ("notifications", "email", str),
    "VAULTDR_DATABASE": ("paths", "database", str),
    "VAULTDR_DATA_DIR": ("paths", "data_dir", str),
    "VAULTDR_BACKUP_DIR": ("paths", "backup_dir", str),
    "VAULTDR_DB_BACKUP_DIR": ("paths", "db_backup_dir", str),
    "VAULTDR_LOG_DIR": ("paths", "log_dir", str),
    "VAULTDR_SCRATCH_ROOT": ("paths", "scratch_root", str),
    "VAULTDR_SECRET_COMMAND": ("secrets", "secret_command", str),
    "VAULTDR_MIN_BACKUP_SIZE": ("validation", "min_size_bytes", int),
}

_SECTIONS = {
    "services": ServicesConfig,
    "backup": BackupConfig,
    "remote": RemoteConfig,
    "secrets": SecretsConfig,
    "validation": ValidationConfig,
    "rehearsal": RehearsalConfig,
    "notifications": NotificationConfig,
    "permissions": PermissionsConfig,
    "rebuild": RebuildConfig,
}


class ConfigManager:
    """Builds the effective vaultdr configuration.

    Precedence, lowest first: built-in defaults, ``settings.env`` in the
    project root, the YAML file, then process environment variables. This is
    the only place that reads the process environment.
    """

    def __init__(
        self,
        project_root: Optional[str] = None,
        config_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize configuration manager.

        Args:
            project_root: Deployment directory (defaults to current directory)
            config_path: Explicit YAML file (defaults to <project_root>/vaultdr.yml)
            environ: Environment mapping (defaults to os.environ)
        """
        self.project_root = os.path.abspath(project_root or os.getcwd())
        self.config_path = config_path or os.path.join(self.project_root, CONFIG_FILENAME)
        self.environ = os.environ if environ is None else environ
        self.validator = ConfigValidator()

    def load_file(self) -> Dict[str, Any]:
        """
        Load the YAML configuration file.

        Returns:
            Dict[str, Any]: Raw configuration (empty when the default file is absent)

        Raises:
            ConfigurationError: If an explicit file is missing or YAML parsing fails
        """
        if not os.path.exists(self.config_path):
            if os.path.basename(self.config_path) == CONFIG_FILENAME and os.path.dirname(
                os.path.abspath(self.config_path)
            ) == self.project_root:
                logger.debug("No %s found, using defaults", CONFIG_FILENAME)
                return {}
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Error parsing YAML file {self.config_path}",
                details=str(e),
                suggestions=create_error_suggestions("configuration_invalid"),
            ) from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        return config

    def load_settings_env(self) -> Dict[str, str]:
        """Read KEY=VALUE pairs from the deployment's settings.env."""
        path = os.path.join(self.project_root, "settings.env")
        if not os.path.exists(path):
            return {}
        values = dotenv_values(path)
        return {key: value for key, value in values.items() if value is not None}

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate configuration.

        Args:
            config: Configuration to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        return self.validator.validate_config(config)

    def load(self, validate: bool = True) -> DRConfig:
        """
        Build the effective configuration.

        Args:
            validate: Whether to validate the YAML file against the schema

        Returns:
            DRConfig: Immutable configuration

        Raises:
            ConfigValidationError: If validation fails
            ConfigurationError: If files cannot be read or values cannot be coerced
        """
        file_config = self.load_file()
        if validate:
            errors = self.validate_config(file_config)
            if errors:
                raise ConfigValidationError(errors)

        settings = self.load_settings_env()
        merged: Dict[str, Dict[str, Any]] = {"paths": dict(DEFAULT_PATHS)}

        self._apply_variables(merged, settings, "settings.env")
        for section, values in file_config.items():
            merged.setdefault(section, {}).update(copy.deepcopy(values))
        self._apply_variables(merged, self.environ, "environment")

        # settings.env and the secret command are consulted later, by SecretManager
        secrets = merged.setdefault("secrets", {})
        passphrase_env = secrets.get("passphrase_env", "BACKUP_PASSPHRASE")
        passphrase = self.environ.get(passphrase_env)
        secrets["passphrase"] = passphrase or None

        backup = merged.setdefault("backup", {})
        if backup.get("encryption", "auto") == "auto":
            has_source = passphrase or settings.get(passphrase_env) or secrets.get("secret_command")
            backup["encryption"] = "gpg" if has_source else "none"

        if validate:
            effective = {
                section: {key: value for key, value in values.items() if value is not None}
                for section, values in merged.items()
            }
            effective["secrets"].pop("passphrase", None)
            errors = self.validate_config(effective)
            if errors:
                raise ConfigValidationError(errors)

        return self._build(merged)

    def _apply_variables(self, merged: Dict[str, Dict[str, Any]], variables: Mapping[str, str], source: str) -> None:
        for name, (section, key, coerce) in ENV_OVERRIDES.items():
            raw = variables.get(name)
            if raw is None or raw == "":
                continue
            try:
                value = coerce(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {name} in {source}: {raw!r}") from e
            merged.setdefault(section, {})[key] = value

    def _build(self, merged: Dict[str, Dict[str, Any]]) -> DRConfig:
        root = self.project_root

        def resolve(path: Optional[str]) -> Optional[str]:
            if path is None:
                return None
            path = os.path.expanduser(path)
            return path if os.path.isabs(path) else os.path.join(root, path)

        raw_paths = merged["paths"]
        paths = PathsConfig(
            project_root=root,
            database=resolve(raw_paths["database"]),
            data_dir=resolve(raw_paths["data_dir"]),
            backup_dir=resolve(raw_paths["backup_dir"]),
            db_backup_dir=resolve(raw_paths["db_backup_dir"]),
            log_dir=resolve(raw_paths["log_dir"]),
            lock_file=resolve(raw_paths["lock_file"]),
            scratch_root=resolve(raw_paths.get("scratch_root")),
        )

        sections = {}
        for name, cls in _SECTIONS.items():
            values = {}
            for key, value in merged.get(name, {}).items():
                values[key] = tuple(value) if isinstance(value, list) else value
            try:
                sections[name] = cls(**values)
            except TypeError as e:
                raise ConfigurationError(f"Invalid '{name}' configuration", details=str(e)) from e

        config = DRConfig(paths=paths, **sections)
        logger.debug("Loaded configuration for %s", root)
        return config

    def dump(self, config: DRConfig) -> str:
        """Render the effective configuration as YAML with secrets redacted."""
        return yaml.safe_dump(config.to_dict(redact=True), default_flow_style=False, sort_keys=False)
