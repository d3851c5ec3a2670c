"""
Docker Engine API client using httpx over the daemon's unix socket.
Used for container health inspection and resource pruning.
"""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .errors import DockerError
from .models import ContainerState

DEFAULT_SOCKET = "/var/run/docker.sock"
API_VERSION = "v1.41"


class DockerClient:
    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.socket_path = socket_path
        self._client = httpx.Client(
            transport=transport or httpx.HTTPTransport(uds=socket_path),
            base_url=f"http://docker/{API_VERSION}",
            timeout=timeout,
        )

    def __enter__(self) -> "DockerClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def is_installed(self) -> bool:
        """Whether the engine socket exists on this host."""
        return Path(self.socket_path).exists()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and decode the JSON body, mapping every failure to DockerError."""
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DockerError(f"Docker is not running or not accessible: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise DockerError(f"Docker API {method} {path} failed ({response.status_code}): {detail}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DockerError(f"Invalid JSON from Docker API {path}") from e

    @staticmethod
    def _filters(filters: Optional[Dict[str, List[str]]]) -> Dict[str, str]:
        return {"filters": json.dumps(filters)} if filters else {}

    def ping(self) -> None:
        """Raise DockerError unless the daemon answers."""
        try:
            response = self._client.get("/_ping")
        except httpx.HTTPError as e:
            raise DockerError(f"Docker is not running or not accessible: {e}") from e
        if response.status_code != 200:
            raise DockerError(f"Docker ping failed ({response.status_code})")

    def list_containers(self, all: bool = False, filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"all": "1" if all else "0"}
        params.update(self._filters(filters))
        return self._request("GET", "/containers/json", params=params) or []

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/containers/{container_id}/json") or {}

    def container_states(self) -> List[ContainerState]:
        """State and health of every running container, sorted by name."""
        states = []
        for summary in self.list_containers():
            details = self.inspect_container(summary["Id"])
            state = details.get("State") or {}
            health = state.get("Health")
            states.append(ContainerState(
                name=details.get("Name", "").lstrip("/") or summary["Id"][:12],
                state=state.get("Status", "unknown"),
                health=health.get("Status") if health else None,
            ))
        return sorted(states, key=lambda s: s.name)

    def list_images(self, filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        return self._request("GET", "/images/json", params=self._filters(filters)) or []

    def list_volumes(self, filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        body = self._request("GET", "/volumes", params=self._filters(filters)) or {}
        return body.get("Volumes") or []

    def list_networks(self, filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        return self._request("GET", "/networks", params=self._filters(filters)) or []

    def prune(self, kind: str, filters: Optional[Dict[str, List[str]]] = None) -> Dict[str, Any]:
        """POST /<kind>/prune for containers, images, volumes or networks."""
        if kind not in ("containers", "images", "volumes", "networks"):
            raise ValueError(f"Unknown prune target: {kind}")
        return self._request("POST", f"/{kind}/prune", params=self._filters(filters)) or {}

    def disk_usage(self) -> Dict[str, int]:
        """Bytes used per resource kind, from /system/df."""
        body = self._request("GET", "/system/df") or {}
        return {
            "images": sum(i.get("Size", 0) for i in body.get("Images") or []),
            "containers": sum(c.get("SizeRw", 0) or 0 for c in body.get("Containers") or []),
            "volumes": sum(
                max(0, (v.get("UsageData") or {}).get("Size", 0)) for v in body.get("Volumes") or []
            ),
            "build_cache": sum(b.get("Size", 0) for b in body.get("BuildCache") or []),
        }
