"""Typed records passed between backup, validation, restore and rehearsal stages."""

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARNING = "WARNING"
    FAILURE = "FAILURE"


class Verdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class BackupStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class StageState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class RestoreStage(str, Enum):
    VALIDATE = "VALIDATE"
    EXTRACT = "EXTRACT"
    RESTORE_DATA_DIRS = "RESTORE_DATA_DIRS"
    RESTORE_DATABASE = "RESTORE_DATABASE"
    RESTORE_CONFIG = "RESTORE_CONFIG"
    RESTORE_TLS = "RESTORE_TLS"
    FIX_PERMISSIONS = "FIX_PERMISSIONS"
    VERIFY_CONFIG = "VERIFY_CONFIG"


class RehearsalVerdict(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    FAILURE = "FAILURE"

    @property
    def exit_code(self) -> int:
        return {"SUCCESS": 0, "WARNING": 1, "FAILURE": 2}[self.value]


class ReplicationStatus(str, Enum):
    UPLOADED = "UPLOADED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChecksumPair:
    md5: str
    sha256: str


@dataclass(frozen=True)
class BackupArchive:
    """A finished, immutable full backup bundle."""

    name: str
    created_at: datetime
    path: str
    size_bytes: int
    components: tuple
    checksums: ChecksumPair
    remote_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["components"] = list(self.components)
        return data


@dataclass(frozen=True)
class ManifestEntry:
    name: str
    size_bytes: int


@dataclass(frozen=True)
class Manifest:
    archive_name: str
    created_at: datetime
    hostname: str
    tool_version: str
    components: tuple
    restore_commands: tuple = ()

    def component_names(self) -> List[str]:
        return [entry.name for entry in self.components]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive_name": self.archive_name,
            "created_at": self.created_at.isoformat(),
            "hostname": self.hostname,
            "tool_version": self.tool_version,
            "components": [asdict(entry) for entry in self.components],
            "restore_commands": list(self.restore_commands),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        return cls(
            archive_name=data["archive_name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            hostname=data.get("hostname", ""),
            tool_version=data.get("tool_version", ""),
            components=tuple(ManifestEntry(c["name"], int(c.get("size_bytes", 0))) for c in data.get("components", [])),
            restore_commands=tuple(data.get("restore_commands", [])),
        )


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    detail: str = ""


@dataclass
class ValidationReport:
    """Outcome of validating one archive. Not persisted."""

    archive_path: str
    deep: bool = False
    checks: List[CheckResult] = field(default_factory=list)
    missing_components: List[str] = field(default_factory=list)
    corrupt_components: List[str] = field(default_factory=list)

    def add(self, name: str, status: CheckStatus, detail: str = "") -> CheckResult:
        result = CheckResult(name, status, detail)
        self.checks.append(result)
        return result

    def check(self, name: str) -> Optional[CheckResult]:
        for result in self.checks:
            if result.name == name:
                return result
        return None

    @property
    def failures(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAILURE]

    @property
    def warnings(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.WARNING]

    @property
    def verdict(self) -> Verdict:
        return Verdict.FAIL if self.failures else Verdict.PASS

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def exit_code(self) -> int:
        if self.failures:
            return 2
        return 1 if self.warnings else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive_path": self.archive_path,
            "deep": self.deep,
            "verdict": self.verdict.value,
            "checks": [{"name": c.name, "status": c.status.value, "detail": c.detail} for c in self.checks],
            "missing_components": self.missing_components,
            "corrupt_components": self.corrupt_components,
        }


@dataclass
class StageStatus:
    stage: RestoreStage
    state: StageState = StageState.PENDING
    detail: str = ""


@dataclass
class RestorePlan:
    """Ordered restore stages for one archive with per-stage status."""

    archive_path: str
    stages: List[StageStatus] = field(default_factory=list)
    advisories: List[str] = field(default_factory=list)

    @classmethod
    def for_archive(cls, archive_path: str) -> "RestorePlan":
        return cls(archive_path=archive_path, stages=[StageStatus(stage) for stage in RestoreStage])

    def status(self, stage: RestoreStage) -> StageStatus:
        for status in self.stages:
            if status.stage == stage:
                return status
        raise KeyError(stage)

    @property
    def failed_stage(self) -> Optional[RestoreStage]:
        for status in self.stages:
            if status.state == StageState.FAILED:
                return status.stage
        return None

    @property
    def completed(self) -> bool:
        return all(s.state in (StageState.DONE, StageState.SKIPPED) for s in self.stages)

    @property
    def exit_code(self) -> int:
        if not self.completed:
            return 2
        return 1 if self.advisories else 0


@dataclass
class ReplicationResult:
    status: ReplicationStatus
    remote_uri: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class BackupOutcome:
    status: BackupStatus
    archive: Optional[BackupArchive] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
    replication: Optional[ReplicationResult] = None
    skipped_reason: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return {BackupStatus.SUCCESS: 0, BackupStatus.PARTIAL: 1, BackupStatus.FAILED: 2}[self.status]


@dataclass(frozen=True)
class DatabaseBackup:
    path: str
    size_bytes: int
    modified: datetime
    format: str

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        return round((now - self.modified).total_seconds() / 3600, 2)


@dataclass
class DumpInspection:
    """Catalog-level view of a dump loaded into a scratch database."""

    placeholder: bool = False
    tables: List[str] = field(default_factory=list)
    essential_found: List[str] = field(default_factory=list)
    essential_missing: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)
    has_inserts: bool = False

    @property
    def has_rows(self) -> bool:
        return any(count > 0 for count in self.row_counts.values())


@dataclass
class DRTestReport:
    """Persisted record of one rehearsal run."""

    test_id: str
    test_date: datetime
    test_result: RehearsalVerdict = RehearsalVerdict.FAILURE
    database_type: str = "SQLite"
    backup_info: Dict[str, Any] = field(default_factory=dict)
    database_stats: Dict[str, Any] = field(default_factory=dict)
    performance: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    report_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_date": self.test_date.isoformat(),
            "test_id": self.test_id,
            "test_result": self.test_result.value,
            "database_type": self.database_type,
            "backup_info": self.backup_info,
            "database_stats": self.database_stats,
            "performance": self.performance,
            "warnings": self.warnings,
            "errors": self.errors,
            "recommendations": self.recommendations,
        }
