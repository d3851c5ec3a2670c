from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from opscheck.docker import API_VERSION, DockerClient
from opscheck.models import ContainerState, CpuLoad, DiskUsage, MemoryUsage
from opscheck.system import HostSources


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    """Keep the audit log and config file out of the real home directory."""
    config_home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.delenv("OPSCHECK_CONFIG", raising=False)
    return config_home / "opscheck"


class FakeServices:
    def __init__(self, active: Dict[str, bool]):
        self.active = active
        self.queried: List[str] = []

    def is_active(self, unit: str) -> bool:
        self.queried.append(unit)
        return self.active.get(unit, False)

class FakeDisks:
    def __init__(self, disks: List[DiskUsage]):
        self.disks = disks

    def usage(self) -> List[DiskUsage]:
        return list(self.disks)

class FakeMemory:
    def __init__(self, used: int, total: int = 1000):
        self.value = MemoryUsage(total=total, used=used)

    def memory(self) -> MemoryUsage:
        return self.value

class FakeCpu:
    def __init__(self, load_1m: float, cores: int = 4):
        self.value = CpuLoad(load_1m=load_1m, cores=cores)

    def load(self) -> CpuLoad:
        return self.value

class FakeContainers:
    def __init__(self, containers: Optional[List[ContainerState]]):
        self.value = containers
        self.calls = 0

    def containers(self) -> Optional[List[ContainerState]]:
        self.calls += 1
        return self.value

class FakeDefinitions:
    def __init__(self, age: Optional[timedelta]):
        self.value = age

    def age(self, path: str) -> Optional[timedelta]:
        return self.value

class FakeUpdates:
    def __init__(self, pending: Optional[int]):
        self.value = pending

    def pending(self) -> Optional[int]:
        return self.value

class Exploding:
    """Stands in for any source; every query raises."""
    def __init__(self, exc: Exception):
        self.exc = exc

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise self.exc
        return fail


def disk(mountpoint: str, percent: float, device: str = "/dev/sda1") -> DiskUsage:
    return DiskUsage(device=device, mountpoint=mountpoint, total=1000, used=int(percent * 10), percent=percent)


def healthy_sources(**overrides) -> HostSources:
    parts = dict(
        services=FakeServices({"docker": True, "sshd": True}),
        disks=FakeDisks([disk("/", 40.0), disk("/var", 55.0, device="/dev/sda2")]),
        memory=FakeMemory(used=300),
        cpu=FakeCpu(load_1m=0.5),
        containers=FakeContainers([ContainerState(name="grafana", state="running", health="healthy")]),
        definitions=FakeDefinitions(timedelta(days=1)),
        updates=FakeUpdates(0),
    )
    parts.update(overrides)
    return HostSources(**parts)


@pytest.fixture
def sources() -> HostSources:
    return healthy_sources()


class FakeEngine:
    """Routes Docker Engine API requests to canned responses."""
    def __init__(self):
        self.requests = []
        self.routes = {("GET", "/_ping"): lambda request: httpx.Response(200, text="OK")}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix(f"/{API_VERSION}")
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"message": f"page not found: {path}"})
        body = handler(request) if callable(handler) else handler
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    def posted(self) -> List[str]:
        return [r.url.path.removeprefix(f"/{API_VERSION}") for r in self.requests if r.method == "POST"]


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()

@pytest.fixture
def docker_client(engine: FakeEngine):
    with DockerClient("/nonexistent/docker.sock", transport=httpx.MockTransport(engine)) as client:
        yield client
