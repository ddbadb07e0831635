"""vaultdr - backup, verification and disaster recovery for SQLite vault deployments."""

__version__ = "0.1.0"
__author__ = "vaultdr maintainers"
