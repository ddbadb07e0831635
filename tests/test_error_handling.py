"""Tests for error handling system."""

import pytest

from vaultdr.utils.errors import (
    ConfigurationError,
    DockerError,
    ErrorHandler,
    IntegrityError,
    LockError,
    PreconditionError,
    StrategyChainError,
    TransientIOError,
    VaultDRError,
    create_error_suggestions,
    format_validation_errors,
)


class TestVaultDRError:
    """Test custom error classes."""

    def test_vaultdr_error_basic(self):
        """Test basic VaultDRError functionality."""
        error = VaultDRError("Test error message")

        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.details is None
        assert error.suggestions == []

    def test_vaultdr_error_with_details(self):
        """Test VaultDRError with details and suggestions."""
        suggestions = ["Try this", "Or try that"]
        error = VaultDRError("Test error", details="Detailed explanation", suggestions=suggestions)

        assert error.message == "Test error"
        assert error.details == "Detailed explanation"
        assert error.suggestions == suggestions

    def test_error_hierarchy(self):
        """Test the error classes callers raise and catch."""
        declared = {cls.__name__ for cls in VaultDRError.__subclasses__() if cls.__module__ == VaultDRError.__module__}

        assert declared == {
            "ConfigurationError",
            "PreconditionError",
            "TransientIOError",
            "IntegrityError",
            "StrategyChainError",
            "DockerError",
            "SecurityError",
        }
        assert issubclass(LockError, PreconditionError)

    def test_specific_error_types(self):
        """Test specific error type inheritance."""
        for cls in (ConfigurationError, PreconditionError, TransientIOError, IntegrityError, DockerError):
            assert isinstance(cls("x"), VaultDRError)

        assert isinstance(LockError("busy"), PreconditionError)

    def test_strategy_chain_error_lists_failures(self):
        """Test the aggregate error carries every strategy's reason."""
        error = StrategyChainError("database dump", [("direct", "locked"), ("container", "docker is not available")])

        assert error.message == "All database dump strategies failed"
        assert error.failures == [("direct", "locked"), ("container", "docker is not available")]
        assert "direct: locked" in error.details
        assert "container: docker is not available" in error.details


class TestErrorHandler:
    """Test error handler functionality."""

    def setup_method(self):
        """Setup test environment."""
        self.handler = ErrorHandler(verbose=False)

    def test_handle_vaultdr_error(self, capsys):
        """Test formatting of vaultdr errors."""
        error = PreconditionError("Archive not found", details="/tmp/x.tar.gz", suggestions=["Check the path"])

        self.handler.handle_error(error, context="Restore")

        err = capsys.readouterr().err
        assert "✗ Archive not found" in err
        assert "Context: Restore" in err
        assert "Details: /tmp/x.tar.gz" in err
        assert "  • Check the path" in err

    def test_handle_generic_error(self, capsys):
        """Test formatting of standard exceptions."""
        self.handler.handle_error(PermissionError("/data"))

        err = capsys.readouterr().err
        assert "Permission denied" in err
        assert "Check file/directory permissions" in err

    def test_exit_with_error(self):
        """Test exit code defaults to 2."""
        with pytest.raises(SystemExit) as exc_info:
            self.handler.exit_with_error(VaultDRError("boom"))

        assert exc_info.value.code == 2


class TestErrorHelpers:
    """Test error helper functions."""

    def test_create_error_suggestions(self):
        suggestions = create_error_suggestions("service_running")

        assert any("docker compose down" in s for s in suggestions)

    def test_create_error_suggestions_with_path(self):
        suggestions = create_error_suggestions("integrity_failed", path="/backups/a.tar.gz")

        assert suggestions[-1] == "Inspect /backups/a.tar.gz"

    def test_unknown_suggestion_type(self):
        assert create_error_suggestions("nope") == []

    def test_format_validation_errors(self):
        assert format_validation_errors([]) == "No validation errors"
        assert format_validation_errors(["bad"]) == "Validation error: bad"

        formatted = format_validation_errors(["first", "second"])
        assert "1. first" in formatted
        assert "2. second" in formatted
