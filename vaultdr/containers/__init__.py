"""Container management for vaultdr."""

from .manager import ContainerManager

__all__ = ["ContainerManager"]
