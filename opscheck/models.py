"""
Pydantic v2 data models for opscheck.
"""
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)

class CheckStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"

class OverallStatus(str, Enum):
    HEALTHY = "healthy"
    FAIR = "fair"
    POOR = "poor"

class CheckMode(str, Enum):
    BRIEF = "brief"
    FULL = "full"

# Highest issue count still rated FAIR.
FAIR_MAX_ISSUES = 3

def overall_for(issue_count: int) -> OverallStatus:
    """Map an issue count onto the overall health rating."""
    if issue_count < 0:
        raise ValueError(f"issue count cannot be negative: {issue_count}")
    if issue_count == 0:
        return OverallStatus.HEALTHY
    if issue_count <= FAIR_MAX_ISSUES:
        return OverallStatus.FAIR
    return OverallStatus.POOR

class CheckResult(FrozenModel):
    name: str
    status: CheckStatus
    message: str

    @property
    def is_issue(self) -> bool:
        return self.status is not CheckStatus.OK

class HealthReport(FrozenModel):
    results: List[CheckResult] = Field(default_factory=list)
    mode: CheckMode = CheckMode.FULL
    hostname: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def issue_count(self) -> int:
        return sum(1 for r in self.results if r.is_issue)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def overall(self) -> OverallStatus:
        return overall_for(self.issue_count)

# Host query values returned by the adapters in opscheck.system

class DiskUsage(FrozenModel):
    device: str
    mountpoint: str
    total: int = 0
    used: int = 0
    percent: float = 0.0
    # Set when the mount could not be queried.
    error: Optional[str] = None

class MemoryUsage(FrozenModel):
    total: int
    used: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.used / self.total * 100, 1)

class CpuLoad(FrozenModel):
    load_1m: float
    cores: int = Field(..., ge=1)

    @property
    def percent(self) -> float:
        return round(self.load_1m / self.cores * 100, 1)

class ContainerState(FrozenModel):
    name: str
    state: str
    health: Optional[str] = None  # None when the container has no healthcheck

# Backup

class BackupManifestEntry(FrozenModel):
    source_path: str
    archive_relative_path: str

    @field_validator("source_path")
    @classmethod
    def validate_source(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("source_path must be absolute")
        return v

    @field_validator("archive_relative_path")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        p = PurePosixPath(v)
        if not v or p.is_absolute():
            raise ValueError("archive_relative_path must be a non-empty relative path")
        if ".." in p.parts:
            raise ValueError("archive_relative_path may not leave the staging tree")
        return p.as_posix()

    @property
    def is_glob(self) -> bool:
        return any(c in self.source_path for c in "*?[")

class SkippedEntry(FrozenModel):
    source_path: str
    reason: str

class Archive(FrozenModel):
    name: str
    path: str
    checksum_path: str
    size_bytes: int
    checksum: str
    created_at: datetime
    staged: List[str] = Field(default_factory=list)
    skipped: List[SkippedEntry] = Field(default_factory=list)
    pruned: List[str] = Field(default_factory=list)

class ArchiveInfo(FrozenModel):
    """An archive found in a destination directory."""
    name: str
    path: str
    size_bytes: int
    modified_at: datetime
    has_checksum: bool

# Cleanup

class CleanupResult(FrozenModel):
    kind: str
    candidates: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    reclaimed_bytes: int = 0
    dry_run: bool = False
    skipped_reason: Optional[str] = None

# Configuration

DEFAULT_SERVICES = [
    "docker",
    "prometheus",
    "grafana-server",
    "alertmanager",
    "clamav-daemon",
    "clamav-freshclam",
]

DEFAULT_MANIFEST = [
    # Monitoring and alerting
    ("/etc/prometheus", "prometheus"),
    ("/etc/alertmanager", "alertmanager"),
    ("/etc/grafana", "grafana"),
    # Network services
    ("/etc/samba/smb.conf", "samba/smb.conf"),
    # Docker
    ("/etc/docker/daemon.json", "docker/daemon.json"),
    # Security
    ("/etc/clamav", "clamav"),
    # System
    ("/etc/systemd/system/*.service", "systemd/custom-services"),
    ("/etc/fstab", "system/fstab"),
    ("/etc/hosts", "system/hosts"),
    ("/etc/hostname", "system/hostname"),
    # Firewall
    ("/etc/iptables", "firewall"),
]

class Thresholds(FrozenModel):
    disk: float = Field(80, ge=0, le=100)
    memory: float = Field(85, ge=0, le=100)
    cpu: float = Field(90, ge=0, le=100)

class HealthConfig(FrozenModel):
    services: List[str] = Field(default_factory=lambda: list(DEFAULT_SERVICES))
    thresholds: Thresholds = Field(default_factory=Thresholds)
    disk_device_prefix: str = "/dev/"
    excluded_mount_prefixes: List[str] = Field(default_factory=lambda: ["/boot"])
    definitions_path: str = "/var/lib/clamav/main.cvd"
    max_definition_age_days: int = Field(7, ge=0)
    check_timeout: Optional[float] = Field(None, gt=0)
    docker_socket: str = "/var/run/docker.sock"

class BackupConfig(FrozenModel):
    destination: str = "/var/backups/system-configs"
    retention_days: int = Field(7, ge=0)
    prefix: str = Field("config-backup", pattern=r"^[A-Za-z0-9_.-]+$")
    manifest: List[BackupManifestEntry] = Field(
        default_factory=lambda: [
            BackupManifestEntry(source_path=src, archive_relative_path=dest)
            for src, dest in DEFAULT_MANIFEST
        ]
    )

class AppConfig(FrozenModel):
    health: HealthConfig = Field(default_factory=HealthConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
