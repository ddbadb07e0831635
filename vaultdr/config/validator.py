"""Configuration validation for vaultdr."""

import re
from typing import Any, Dict, List

import jsonschema

from .schemas import DR_CONFIG_SCHEMA

CRON_FIELD = re.compile(r"^[\d*/,\-]+$")
EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


class ConfigValidator:
    """Validates vaultdr configuration files."""

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate a vaultdr configuration mapping.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        errors = []

        validator = jsonschema.Draft7Validator(DR_CONFIG_SCHEMA)
        for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
            location = ".".join(str(p) for p in error.path) or "<root>"
            errors.append(f"Schema validation failed at {location}: {error.message}")

        if errors:
            return errors

        for section in ("backup", "validation", "rehearsal"):
            schedule = config.get(section, {}).get("schedule")
            if schedule:
                errors.extend(self._validate_cron(f"{section}.schedule", schedule))

        db_schedule = config.get("backup", {}).get("db_schedule")
        if db_schedule:
            errors.extend(self._validate_cron("backup.db_schedule", db_schedule))

        email = config.get("notifications", {}).get("email")
        if email and not EMAIL.match(email):
            errors.append(f"notifications.email is not an email address: {email}")

        remote = config.get("remote", {})
        if remote.get("name") and ":" in remote["name"]:
            errors.append("remote.name must be the rclone remote name without ':'")

        return errors

    def _validate_cron(self, key: str, expression: str) -> List[str]:
        """Validate a five-field cron expression."""
        fields = expression.split()
        if len(fields) != 5:
            return [f"{key} must have 5 cron fields, got {len(fields)}"]
        bad = [f for f in fields if not CRON_FIELD.match(f)]
        if bad:
            return [f"{key} has invalid cron fields: {', '.join(bad)}"]
        return []
