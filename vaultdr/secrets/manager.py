"""Backup passphrase resolution and file encryption for vaultdr."""

import base64
import logging
import os
import shlex
import shutil
import subprocess
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from dotenv import dotenv_values

from vaultdr.config.settings import DRConfig
from vaultdr.utils.errors import (
    IntegrityError,
    PreconditionError,
    SecurityError,
    create_error_suggestions,
)
from vaultdr.utils.files import gunzip_file, gzip_file, is_gzip_file, remove_path

logger = logging.getLogger(__name__)

SALT_SIZE = 16
KDF_ITERATIONS = 390000

GPG_ENCRYPTED = "GPG_ENCRYPTED"
FERNET_ENCRYPTED = "FERNET_ENCRYPTED"
GZIP_COMPRESSED = "GZIP_COMPRESSED"
PLAIN_SQL = "PLAIN_SQL"


def detect_backup_format(path: str) -> str:
    """Classify a database backup file by its outermost layer."""
    name = os.path.basename(path)
    if name.endswith(".gpg"):
        return GPG_ENCRYPTED
    if name.endswith(".enc"):
        return FERNET_ENCRYPTED
    if name.endswith(".gz"):
        return GZIP_COMPRESSED
    return PLAIN_SQL


def parse_secret_output(output: str) -> Dict[str, str]:
    """Parse KEY=VALUE lines printed by a secret command."""
    values = {}
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("'\"")
    return values


class SecretManager:
    """Resolves the backup passphrase and applies or removes encryption layers."""

    def __init__(self, config: DRConfig, verbose: bool = False):
        """
        Initialize secret manager.

        Args:
            config: Effective configuration
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose
        self._passphrase: Optional[str] = None

    def resolve_passphrase(self, required: bool = True) -> Optional[str]:
        """
        Find the backup passphrase.

        Sources are tried in order: the configured environment variable, the
        secret command, then settings.env.

        Args:
            required: Raise when no source provides a passphrase

        Returns:
            Optional[str]: The passphrase, or None when not required and absent

        Raises:
            PreconditionError: If required and no passphrase is available
        """
        if self._passphrase:
            return self._passphrase

        secrets = self.config.secrets
        passphrase = secrets.passphrase
        source = f"environment ({secrets.passphrase_env})"

        if not passphrase and secrets.secret_command:
            passphrase = self._from_secret_command()
            source = "secret command"

        if not passphrase:
            settings_file = self.config.paths.settings_file
            if os.path.exists(settings_file):
                passphrase = dotenv_values(settings_file).get(secrets.passphrase_env)
                source = "settings.env"

        if not passphrase:
            if required:
                raise PreconditionError(
                    "No backup passphrase available",
                    details=f"Looked for {secrets.passphrase_env} in the environment, secret command and settings.env",
                    suggestions=create_error_suggestions("passphrase_missing"),
                )
            return None

        logger.debug("Backup passphrase loaded from %s", source)
        self._passphrase = passphrase
        return passphrase

    def _from_secret_command(self) -> Optional[str]:
        command = self.config.secrets.secret_command
        try:
            result = subprocess.run(
                shlex.split(command),
                capture_output=True,
                text=True,
                timeout=self.config.secrets.secret_timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Secret command failed to run: %s", e)
            return None

        if result.returncode != 0:
            logger.warning("Secret command exited with %s: %s", result.returncode, result.stderr.strip())
            return None

        return parse_secret_output(result.stdout).get(self.config.secrets.passphrase_env)

    def _fernet(self, passphrase: str, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
        return Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))))

    def encrypt_file(self, source: str, destination: str, method: str) -> str:
        """
        Encrypt a file with gpg or Fernet.

        Args:
            source: Plain file
            destination: Encrypted output path
            method: "gpg" or "fernet"

        Returns:
            str: Destination path

        Raises:
            PreconditionError: If no passphrase is available
            SecurityError: If encryption fails
        """
        passphrase = self.resolve_passphrase(required=True)

        if method == "fernet":
            salt = os.urandom(SALT_SIZE)
            with open(source, "rb") as f:
                token = self._fernet(passphrase, salt).encrypt(f.read())
            with open(destination, "wb") as f:
                f.write(salt + token)
            return destination

        if method == "gpg":
            self._run_gpg(
                ["--symmetric", "--cipher-algo", "AES256", "--output", destination, source],
                passphrase,
                destination,
            )
            return destination

        raise SecurityError(f"Unknown encryption method: {method}")

    def decrypt_file(self, source: str, destination: str) -> str:
        """
        Decrypt a .gpg or .enc file.

        Raises:
            IntegrityError: If the ciphertext is corrupt or the passphrase is wrong
        """
        fmt = detect_backup_format(source)
        passphrase = self.resolve_passphrase(required=True)

        if fmt == FERNET_ENCRYPTED:
            with open(source, "rb") as f:
                blob = f.read()
            salt, token = blob[:SALT_SIZE], blob[SALT_SIZE:]
            try:
                data = self._fernet(passphrase, salt).decrypt(token)
            except InvalidToken as e:
                raise IntegrityError(
                    f"Cannot decrypt {os.path.basename(source)}",
                    details="Wrong passphrase or corrupt file",
                ) from e
            with open(destination, "wb") as f:
                f.write(data)
            return destination

        if fmt == GPG_ENCRYPTED:
            try:
                self._run_gpg(["--decrypt", "--output", destination, source], passphrase, destination)
            except SecurityError as e:
                raise IntegrityError(
                    f"Cannot decrypt {os.path.basename(source)}", details=e.details
                ) from e
            return destination

        raise SecurityError(f"Not an encrypted file: {source}")

    def _run_gpg(self, args: list, passphrase: str, destination: str) -> None:
        if shutil.which("gpg") is None:
            raise SecurityError("gpg is not installed", suggestions=["Install gnupg or use encryption: fernet"])
        command = [
            "gpg",
            "--batch",
            "--yes",
            "--quiet",
            "--pinentry-mode",
            "loopback",
            "--passphrase-fd",
            "0",
        ] + args
        result = subprocess.run(command, input=passphrase, capture_output=True, text=True)
        if result.returncode != 0:
            remove_path(destination)
            raise SecurityError("gpg operation failed", details=result.stderr.strip())

    def protect_database_backup(self, sql_path: str, output_dir: str, encryption: str) -> str:
        """
        Compress and optionally encrypt a dump for storage.

        Args:
            sql_path: Plain SQL dump
            output_dir: Directory for the result
            encryption: "gpg", "fernet" or "none"

        Returns:
            str: Path of the .sql.gz, .sql.gz.gpg or .sql.gz.enc file
        """
        gz_path = os.path.join(output_dir, os.path.basename(sql_path) + ".gz")
        gzip_file(sql_path, gz_path)
        if encryption == "none":
            return gz_path

        suffix = ".gpg" if encryption == "gpg" else ".enc"
        encrypted = gz_path + suffix
        try:
            self.encrypt_file(gz_path, encrypted, encryption)
        finally:
            remove_path(gz_path)
        return encrypted

    def unwrap_database_backup(self, path: str, destination: str, scratch_dir: str) -> str:
        """
        Remove encryption then compression layers into a plain SQL file.

        Intermediate plaintext stays inside scratch_dir.

        Args:
            path: Backup file
            destination: Plain SQL output path
            scratch_dir: Private directory for intermediate files

        Returns:
            str: Outermost format of the input
        """
        fmt = detect_backup_format(path)
        current = path

        if fmt in (GPG_ENCRYPTED, FERNET_ENCRYPTED):
            decrypted = os.path.join(scratch_dir, "decrypted.layer")
            self.decrypt_file(current, decrypted)
            current = decrypted

        if is_gzip_file(current):
            gunzip_file(current, destination)
        else:
            shutil.copyfile(current, destination)

        if current != path:
            remove_path(current)

        return fmt
