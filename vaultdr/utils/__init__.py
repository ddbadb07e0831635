"""Utilities for vaultdr."""

from .files import FileManager, scratch_workspace
from .locking import RunLock
from .logging import setup_logging

__all__ = ["FileManager", "RunLock", "scratch_workspace", "setup_logging"]
