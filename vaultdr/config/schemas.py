"""Configuration file schemas for vaultdr."""

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

DR_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "paths": {
            "type": "object",
            "properties": {
                "database": {"type": "string", "description": "SQLite database file"},
                "data_dir": {"type": "string"},
                "backup_dir": {"type": "string", "description": "Where full archives are written"},
                "db_backup_dir": {"type": "string", "description": "Where database-only backups are written"},
                "log_dir": {"type": "string"},
                "scratch_root": {"type": "string"},
                "lock_file": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "services": {
            "type": "object",
            "properties": {
                "app": {"type": "string"},
                "backup_helper": {"type": "string"},
                "container_db_path": {"type": "string"},
                "helper_script": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "backup": {
            "type": "object",
            "properties": {
                "retention_days": {"type": "integer", "minimum": 1},
                "min_interval_hours": {"type": "number", "minimum": 0},
                "encryption": {"type": "string", "enum": ["auto", "gpg", "fernet", "none"]},
                "include_files": {"type": "boolean"},
                "config_items": _STRING_LIST,
                "data_excludes": _STRING_LIST,
                "tls_dir": {"type": "string"},
                "schedule": {"type": "string"},
                "db_schedule": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "remote": {
            "type": "object",
            "properties": {
                "name": {"type": ["string", "null"], "description": "rclone remote name"},
                "path": {"type": "string"},
                "retries": {"type": "integer", "minimum": 1, "maximum": 20},
                "backoff_seconds": {"type": "number", "minimum": 0},
                "timeout_seconds": {"type": "integer", "minimum": 1},
                "rclone_path": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "secrets": {
            "type": "object",
            "properties": {
                "passphrase_env": {"type": "string", "pattern": r"^[A-Z_][A-Z0-9_]*$"},
                "secret_command": {"type": ["string", "null"]},
                "secret_timeout_seconds": {"type": "integer", "minimum": 1},
            },
            "additionalProperties": False,
        },
        "validation": {
            "type": "object",
            "properties": {
                "min_size_bytes": {"type": "integer", "minimum": 0},
                "essential_tables": {**_STRING_LIST, "minItems": 1},
                "schedule": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "rehearsal": {
            "type": "object",
            "properties": {
                "backup_locations": _STRING_LIST,
                "patterns": _STRING_LIST,
                "max_restore_seconds": {"type": "number", "minimum": 0},
                "query_timeout_seconds": {"type": "number", "minimum": 0},
                "max_backup_age_hours": {"type": "number", "minimum": 0},
                "schedule": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "notifications": {
            "type": "object",
            "properties": {
                "email": {"type": ["string", "null"]},
                "sendmail_path": {"type": "string"},
                "sender": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "permissions": {
            "type": "object",
            "properties": {
                "uid": {"type": "integer", "minimum": 0},
                "gid": {"type": "integer", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "rebuild": {
            "type": "object",
            "properties": {
                "health_url": {"type": "string"},
                "health_timeout_seconds": {"type": "integer", "minimum": 1},
                "min_ram_gb": {"type": "number", "minimum": 0},
                "min_disk_gb": {"type": "number", "minimum": 0},
                "setup_script": {"type": "string"},
                "startup_script": {"type": "string"},
                "expected_arch": _STRING_LIST,
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}
