"""
Host query adapters.

Each adapter answers one narrow question about the host and returns typed
values. The health checks only interpret those values, so tests swap in
fakes implementing the same protocols.
"""
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Protocol

import psutil

from .docker import DockerClient
from .errors import CommandNotFoundError, QueryError
from .models import ContainerState, CpuLoad, DiskUsage, HealthConfig, MemoryUsage
from .utils import which


@dataclass(frozen=True)
class CmdResult:
    rc: int
    out: str
    err: str


def run_command(cmd: List[str], timeout_s: float = 15) -> CmdResult:
    """Run an external command, raising CommandNotFoundError if it is not installed."""
    try:
        p = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandNotFoundError(f"Command not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise QueryError(f"Timeout running: {' '.join(cmd)}") from e
    return CmdResult(p.returncode, p.stdout.strip(), p.stderr.strip())


class ServiceStatusSource(Protocol):
    def is_active(self, unit: str) -> bool:
        ...

class DiskUsageSource(Protocol):
    def usage(self) -> List[DiskUsage]:
        ...

class MemoryUsageSource(Protocol):
    def memory(self) -> MemoryUsage:
        ...

class CpuLoadSource(Protocol):
    def load(self) -> CpuLoad:
        ...

class ContainerHealthSource(Protocol):
    def containers(self) -> Optional[List[ContainerState]]:
        """Running containers, or None when no container engine is installed."""
        ...

class DefinitionAgeSource(Protocol):
    def age(self, path: str) -> Optional[timedelta]:
        """Age of the file at path, or None if it does not exist."""
        ...

class UpdateSource(Protocol):
    def pending(self) -> Optional[int]:
        """Number of pending package updates, or None if it cannot be determined."""
        ...


class SystemctlServiceSource:
    def is_active(self, unit: str) -> bool:
        return run_command(["systemctl", "is-active", "--quiet", unit]).rc == 0


class PsutilDiskSource:
    def usage(self) -> List[DiskUsage]:
        disks = []
        for part in psutil.disk_partitions(all=False):
            try:
                stats = psutil.disk_usage(part.mountpoint)
            except OSError as e:
                disks.append(DiskUsage(device=part.device, mountpoint=part.mountpoint, error=str(e)))
                continue
            disks.append(DiskUsage(
                device=part.device,
                mountpoint=part.mountpoint,
                total=stats.total,
                used=stats.used,
                percent=stats.percent,
            ))
        return disks


class PsutilMemorySource:
    def memory(self) -> MemoryUsage:
        vm = psutil.virtual_memory()
        return MemoryUsage(total=vm.total, used=vm.used)


class PsutilCpuSource:
    def load(self) -> CpuLoad:
        load_1m, _, _ = psutil.getloadavg()
        return CpuLoad(load_1m=load_1m, cores=psutil.cpu_count() or 1)


class DockerContainerSource:
    def __init__(self, socket_path: str):
        self.socket_path = socket_path

    def containers(self) -> Optional[List[ContainerState]]:
        with DockerClient(self.socket_path) as client:
            if not client.is_installed():
                return None
            return client.container_states()


class FileAgeSource:
    def age(self, path: str) -> Optional[timedelta]:
        p = Path(path)
        if not p.exists():
            return None
        return datetime.now() - datetime.fromtimestamp(p.stat().st_mtime)


class CheckupdatesSource:
    """Pending updates via pacman-contrib's checkupdates."""

    def pending(self) -> Optional[int]:
        if which("checkupdates") is None:
            return None
        r = run_command(["checkupdates"], timeout_s=120)
        # checkupdates exits 2 when the system is up to date
        if r.rc == 2:
            return 0
        if r.rc != 0:
            raise QueryError(f"checkupdates failed ({r.rc}): {r.err or r.out}")
        return len([line for line in r.out.splitlines() if line.strip()])


@dataclass
class HostSources:
    services: ServiceStatusSource
    disks: DiskUsageSource
    memory: MemoryUsageSource
    cpu: CpuLoadSource
    containers: ContainerHealthSource
    definitions: DefinitionAgeSource
    updates: UpdateSource

    @classmethod
    def from_config(cls, config: HealthConfig) -> "HostSources":
        return cls(
            services=SystemctlServiceSource(),
            disks=PsutilDiskSource(),
            memory=PsutilMemorySource(),
            cpu=PsutilCpuSource(),
            containers=DockerContainerSource(config.docker_socket),
            definitions=FileAgeSource(),
            updates=CheckupdatesSource(),
        )
