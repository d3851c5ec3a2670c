"""
Docker resource cleanup: stopped containers and dangling images, volumes and networks.
"""
from typing import Any, Callable, Dict, List, Optional, Sequence

from .audit import AuditLogger
from .docker import DockerClient
from .errors import CleanupError
from .models import CleanupResult
from .utils import human_size

KINDS = ("containers", "images", "volumes", "networks")
DEFAULT_KINDS = ("containers", "images", "networks")


def select_kinds(
    containers: bool = False,
    images: bool = False,
    volumes: bool = False,
    networks: bool = False,
    all_: bool = False,
) -> List[str]:
    """Resolve selector flags to the ordered list of resource kinds to clean."""
    if all_:
        return list(KINDS)
    flags = {"containers": containers, "images": images, "volumes": volumes, "networks": networks}
    chosen = [k for k in KINDS if flags[k]]
    return chosen or list(DEFAULT_KINDS)


def _prune_filters(kind: str, all_images: bool) -> Optional[Dict[str, List[str]]]:
    if kind == "images":
        # dangling=false widens the prune to every image without a container
        return {"dangling": ["false" if all_images else "true"]}
    return None


def _image_label(image: Dict[str, Any]) -> str:
    tags = [t for t in image.get("RepoTags") or [] if t != "<none>:<none>"]
    label = tags[0] if tags else image.get("Id", "")[7:19] or "<none>"
    return f"{label} ({human_size(image.get('Size', 0))})"


def find_candidates(client: DockerClient, kind: str, all_images: bool = False) -> List[str]:
    """Human-readable names of what a prune of kind would remove."""
    if kind == "containers":
        found = client.list_containers(all=True, filters={"status": ["exited"]})
        return sorted(
            f"{(c.get('Names') or ['/' + c['Id'][:12]])[0].lstrip('/')} ({c.get('Image', '')})"
            for c in found
        )
    if kind == "images":
        if all_images:
            used = {c.get("ImageID") for c in client.list_containers(all=True)}
            found = [i for i in client.list_images() if i.get("Id") not in used]
        else:
            found = client.list_images(filters={"dangling": ["true"]})
        return sorted(_image_label(i) for i in found)
    if kind == "volumes":
        return sorted(v["Name"] for v in client.list_volumes(filters={"dangling": ["true"]}))
    if kind == "networks":
        return sorted(n["Name"] for n in client.list_networks(filters={"dangling": ["true"]}))
    raise CleanupError(f"Unknown resource kind: {kind}")


def _removed(kind: str, response: Dict[str, Any]) -> List[str]:
    if kind == "images":
        return [
            d.get("Deleted") or d.get("Untagged", "")
            for d in response.get("ImagesDeleted") or []
        ]
    key = {"containers": "ContainersDeleted", "volumes": "VolumesDeleted", "networks": "NetworksDeleted"}[kind]
    return list(response.get(key) or [])


def cleanup(
    client: DockerClient,
    kinds: Sequence[str],
    dry_run: bool = False,
    all_images: bool = False,
    confirm_volumes: Callable[[List[str]], bool] = lambda candidates: True,
) -> List[CleanupResult]:
    """
    Prune each selected kind in order. Volume data is destroyed permanently,
    so volumes are only pruned once confirm_volumes approves the candidates.
    """
    client.ping()
    results: List[CleanupResult] = []
    for kind in kinds:
        candidates = find_candidates(client, kind, all_images)

        if dry_run or not candidates:
            results.append(CleanupResult(kind=kind, candidates=candidates, dry_run=dry_run))
            continue

        if kind == "volumes" and not confirm_volumes(candidates):
            results.append(CleanupResult(kind=kind, candidates=candidates, skipped_reason="Volume cleanup cancelled"))
            continue

        response = client.prune(kind, _prune_filters(kind, all_images))
        results.append(CleanupResult(
            kind=kind,
            candidates=candidates,
            removed=_removed(kind, response),
            reclaimed_bytes=response.get("SpaceReclaimed", 0) or 0,
        ))

    AuditLogger().log(
        "cleanup_run",
        dry_run=dry_run,
        kinds=list(kinds),
        removed={r.kind: len(r.removed) for r in results},
        reclaimed=sum(r.reclaimed_bytes for r in results),
    )
    return results
