"""Passphrase and encryption handling for vaultdr."""

from .manager import SecretManager, detect_backup_format

__all__ = ["SecretManager", "detect_backup_format"]
