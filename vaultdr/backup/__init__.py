"""Backup, verification and recovery for a single-node SQLite Vaultwarden deployment."""

from .manager import BackupManager
from .rebuild import RebuildCoordinator
from .recovery import RecoveryManager
from .rehearsal import RehearsalRunner
from .scheduler import BackupScheduler
from .storage import BackupStorage, RemoteReplicator
from .validator import BackupValidator

__all__ = [
    "BackupManager",
    "BackupScheduler",
    "BackupStorage",
    "BackupValidator",
    "RebuildCoordinator",
    "RecoveryManager",
    "RehearsalRunner",
    "RemoteReplicator",
]
