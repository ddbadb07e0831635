"""Error handling utilities for vaultdr."""

import sys
import traceback
from typing import List, Optional

import click


class VaultDRError(Exception):
    """Base exception for vaultdr errors."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
    ):
        self.message = message
        self.details = details
        self.suggestions = suggestions or []
        super().__init__(message)


class ConfigurationError(VaultDRError):
    """Raised when configuration is invalid or missing."""

    pass


class PreconditionError(VaultDRError):
    """Raised when a required input is missing or unusable. Never retried."""

    pass


class LockError(PreconditionError):
    """Raised when another backup or restore run holds the run lock."""

    pass


class TransientIOError(VaultDRError):
    """Raised when a network or remote storage operation fails."""

    pass


class IntegrityError(VaultDRError):
    """Raised when an archive, checksum or restored database cannot be trusted."""

    pass


class StrategyChainError(VaultDRError):
    """Raised when every strategy in a fallback chain failed."""

    def __init__(self, operation: str, failures: List[tuple]):
        self.operation = operation
        self.failures = failures
        details = "\n".join(f"{name}: {reason}" for name, reason in failures)
        super().__init__(
            f"All {operation} strategies failed",
            details=details,
            suggestions=create_error_suggestions("strategies_exhausted"),
        )


class DockerError(VaultDRError):
    """Raised when Docker operations fail."""

    pass


class SecurityError(VaultDRError):
    """Raised when encryption or passphrase handling fails."""

    pass


class ErrorHandler:
    """Handles and formats errors for user-friendly display."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handle_error(self, error: Exception, context: Optional[str] = None) -> None:
        """
        Handle and display error with appropriate formatting.

        Args:
            error: Exception to handle
            context: Optional context about when/where error occurred
        """
        if isinstance(error, VaultDRError):
            self._handle_vaultdr_error(error, context)
        else:
            self._handle_generic_error(error, context)

    def _handle_vaultdr_error(self, error: VaultDRError, context: Optional[str]) -> None:
        """Handle vaultdr-specific errors."""
        click.echo(f"✗ {error.message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if error.details:
            click.echo(f"Details: {error.details}", err=True)

        if error.suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in error.suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def _handle_generic_error(self, error: Exception, context: Optional[str]) -> None:
        """Handle generic Python exceptions."""
        error_type = type(error).__name__

        if isinstance(error, FileNotFoundError):
            message = f"File not found: {error}"
            suggestions = [
                "Check that the file path is correct",
                "Ensure the file exists and is readable",
            ]
        elif isinstance(error, PermissionError):
            message = f"Permission denied: {error}"
            suggestions = [
                "Check file/directory permissions",
                "Try running with appropriate privileges",
            ]
        elif isinstance(error, ConnectionError):
            message = f"Connection failed: {error}"
            suggestions = [
                "Verify that the target service is running",
                "Check your network connection",
            ]
        else:
            message = f"{error_type}: {error}"
            suggestions = []

        click.echo(f"✗ {message}", err=True)

        if context:
            click.echo(f"Context: {context}", err=True)

        if suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    def exit_with_error(self, error: Exception, context: Optional[str] = None, exit_code: int = 2) -> None:
        """Handle error and exit with specified code."""
        self.handle_error(error, context)
        sys.exit(exit_code)


def create_error_suggestions(error_type: str, **kwargs) -> list:
    """
    Create contextual error suggestions based on error type.

    Args:
        error_type: Type of error
        **kwargs: Additional context information

    Returns:
        list: List of suggestion strings
    """
    suggestions = {
        "docker_not_running": [
            "Start the Docker daemon",
            "Verify Docker permissions for current user",
        ],
        "passphrase_missing": [
            "Set BACKUP_PASSPHRASE in the environment or settings.env",
            "Configure secrets.secret_command to fetch it from your secret store",
        ],
        "no_backups_found": [
            "Run 'vaultdr backup run' or 'vaultdr backup database' first",
            "Check the configured backup locations",
        ],
        "service_running": [
            "Stop the stack with 'docker compose down' before restoring",
            "Pass --allow-running if you know the service is not using the database",
        ],
        "already_running": [
            "Wait for the other run to finish",
            "Remove a stale lock file only if no vaultdr process is alive",
        ],
        "configuration_invalid": [
            "Check YAML syntax in configuration file",
            "Validate configuration values against 'vaultdr config validate'",
        ],
        "strategies_exhausted": [
            "Check that the sqlite3 database file is readable",
            "Check that the application container is running for container fallbacks",
        ],
        "integrity_failed": [
            "Do not rely on this backup",
            "Validate an older archive with 'vaultdr validate --all --deep'",
        ],
    }

    result = list(suggestions.get(error_type, []))
    path = kwargs.get("path")
    if path:
        result.append(f"Inspect {path}")
    return result


def format_validation_errors(errors: list) -> str:
    """
    Format validation errors for display.

    Args:
        errors: List of validation error messages

    Returns:
        str: Formatted error message
    """
    if not errors:
        return "No validation errors"

    if len(errors) == 1:
        return f"Validation error: {errors[0]}"

    formatted = "Validation errors:\n"
    for i, error in enumerate(errors, 1):
        formatted += f"  {i}. {error}\n"

    return formatted.strip()
