"""
Health aggregation: runs the registered checks and folds them into one report.
"""
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import (
    CheckMode,
    CheckResult,
    CheckStatus,
    HealthConfig,
    HealthReport,
)
from .system import HostSources
from .utils import hostname

CheckFn = Callable[[], Sequence[CheckResult]]


@dataclass(frozen=True)
class HealthCheck:
    name: str
    run: CheckFn
    full_only: bool = False

    def enabled(self, mode: CheckMode) -> bool:
        return mode is CheckMode.FULL or not self.full_only


def _run_guarded(check: HealthCheck, timeout: Optional[float]) -> List[CheckResult]:
    """Run one check, turning any failure or timeout into a WARN result."""
    if timeout is None:
        try:
            return list(check.run())
        except Exception as e:
            return [CheckResult(name=check.name, status=CheckStatus.WARN, message=f"check failed: {e}")]

    # Daemon worker: a hung query must not keep the interpreter alive at exit.
    outcome: Dict[str, Any] = {}

    def work() -> None:
        try:
            outcome["results"] = list(check.run())
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=work, name=f"check-{check.name}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        return [CheckResult(name=check.name, status=CheckStatus.WARN, message=f"check timed out after {timeout:g}s")]
    if "error" in outcome:
        return [CheckResult(name=check.name, status=CheckStatus.WARN, message=f"check failed: {outcome['error']}")]
    return outcome["results"]


def run_checks(
    checks: Sequence[HealthCheck],
    mode: CheckMode = CheckMode.FULL,
    timeout: Optional[float] = None,
) -> HealthReport:
    """Run every check enabled for mode, in registration order."""
    started = datetime.now()
    results: List[CheckResult] = []
    for check in checks:
        if check.enabled(mode):
            results.extend(_run_guarded(check, timeout))
    return HealthReport(
        results=results,
        mode=mode,
        hostname=hostname(),
        started_at=started,
        finished_at=datetime.now(),
    )


# Check policies

def service_check(sources: HostSources, unit: str) -> CheckFn:
    def run() -> List[CheckResult]:
        if sources.services.is_active(unit):
            return [CheckResult(name=f"service:{unit}", status=CheckStatus.OK, message=f"{unit} is running")]
        return [CheckResult(name=f"service:{unit}", status=CheckStatus.FAIL, message=f"{unit} is NOT running")]
    return run


def disk_check(sources: HostSources, config: HealthConfig) -> CheckFn:
    def run() -> List[CheckResult]:
        results = []
        disks = [
            d for d in sources.disks.usage()
            if d.device.startswith(config.disk_device_prefix)
            and not any(d.mountpoint.startswith(p) for p in config.excluded_mount_prefixes)
        ]
        for d in sorted(disks, key=lambda d: d.mountpoint):
            if d.error is not None:
                results.append(CheckResult(
                    name=f"disk:{d.mountpoint}",
                    status=CheckStatus.WARN,
                    message=f"cannot read usage ({d.device}): {d.error}",
                ))
                continue
            status = CheckStatus.WARN if d.percent >= config.thresholds.disk else CheckStatus.OK
            results.append(CheckResult(
                name=f"disk:{d.mountpoint}",
                status=status,
                message=f"{d.percent:g}% full ({d.device})",
            ))
        return results
    return run


def memory_check(sources: HostSources, config: HealthConfig) -> CheckFn:
    def run() -> List[CheckResult]:
        mem = sources.memory.memory()
        status = CheckStatus.WARN if mem.percent >= config.thresholds.memory else CheckStatus.OK
        return [CheckResult(name="memory", status=status, message=f"Memory usage is at {mem.percent:g}%")]
    return run


def cpu_check(sources: HostSources, config: HealthConfig) -> CheckFn:
    def run() -> List[CheckResult]:
        cpu = sources.cpu.load()
        status = CheckStatus.WARN if cpu.percent >= config.thresholds.cpu else CheckStatus.OK
        return [CheckResult(
            name="cpu",
            status=status,
            message=f"CPU load is at {cpu.percent:g}% ({cpu.load_1m:.2f} on {cpu.cores} cores)",
        )]
    return run


def container_check(sources: HostSources) -> CheckFn:
    def run() -> List[CheckResult]:
        containers = sources.containers.containers()
        if containers is None:
            return [CheckResult(name="containers", status=CheckStatus.OK, message="Docker is not installed")]
        if not containers:
            return [CheckResult(name="containers", status=CheckStatus.OK, message="No running containers")]

        results = []
        for c in sorted(containers, key=lambda c: c.name):
            healthy = c.state == "running" and c.health in (None, "healthy")
            results.append(CheckResult(
                name=f"container:{c.name}",
                status=CheckStatus.OK if healthy else CheckStatus.FAIL,
                message=f"{c.state} ({c.health or 'no healthcheck'})",
            ))
        return results
    return run


def definitions_check(sources: HostSources, config: HealthConfig) -> CheckFn:
    def run() -> List[CheckResult]:
        age = sources.definitions.age(config.definitions_path)
        if age is None:
            return [CheckResult(
                name="clamav-definitions",
                status=CheckStatus.OK,
                message=f"No virus definitions at {config.definitions_path}",
            )]
        days = age.total_seconds() / 86400
        if days > config.max_definition_age_days:
            return [CheckResult(
                name="clamav-definitions",
                status=CheckStatus.WARN,
                message=f"ClamAV virus definitions are older than {config.max_definition_age_days} days ({days:.0f}d)",
            )]
        return [CheckResult(name="clamav-definitions", status=CheckStatus.OK, message="ClamAV virus definitions are up to date")]
    return run


def updates_check(sources: HostSources) -> CheckFn:
    def run() -> List[CheckResult]:
        pending = sources.updates.pending()
        if pending is None:
            return [CheckResult(
                name="updates",
                status=CheckStatus.OK,
                message="Cannot check for updates (checkupdates not available)",
            )]
        if pending > 0:
            return [CheckResult(name="updates", status=CheckStatus.WARN, message=f"{pending} package update(s) available")]
        return [CheckResult(name="updates", status=CheckStatus.OK, message="System is up to date")]
    return run


def build_checks(config: HealthConfig, sources: HostSources) -> List[HealthCheck]:
    """The fixed, ordered check registry."""
    checks = [HealthCheck(f"service:{unit}", service_check(sources, unit)) for unit in config.services]
    checks += [
        HealthCheck("disk", disk_check(sources, config)),
        HealthCheck("memory", memory_check(sources, config)),
        HealthCheck("cpu", cpu_check(sources, config)),
        HealthCheck("containers", container_check(sources), full_only=True),
        HealthCheck("clamav-definitions", definitions_check(sources, config), full_only=True),
        HealthCheck("updates", updates_check(sources), full_only=True),
    ]
    return checks


def run_health(
    config: HealthConfig,
    mode: CheckMode = CheckMode.FULL,
    sources: Optional[HostSources] = None,
    timeout: Optional[float] = None,
) -> HealthReport:
    """Build the registry for this host and run it."""
    sources = sources or HostSources.from_config(config)
    report = run_checks(build_checks(config, sources), mode, timeout or config.check_timeout)

    from .audit import AuditLogger
    AuditLogger().log(
        "health_run",
        mode=mode.value,
        issue_count=report.issue_count,
        overall=report.overall.value,
        issues=[r.name for r in report.results if r.is_issue],
    )
    return report
