"""
Configuration backup engine.
Stages manifest sources, packs them into one checksummed tar.gz and rotates old archives.
"""
import errno
import fcntl
import glob
import os
import shutil
import tarfile
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator, Iterable, List, Optional, Sequence, Tuple

from .audit import AuditLogger
from .errors import ArchiveError, BackupLockedError, DestinationError
from .models import Archive, ArchiveInfo, BackupManifestEntry, SkippedEntry
from .utils import sha256_file, timestamp_id

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"
LOCK_NAME = ".opscheck-backup.lock"
DEFAULT_PREFIX = "config-backup"


def archive_name(now: datetime, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}-{timestamp_id(now)}"

def checksum_path_for(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name[: -len(ARCHIVE_SUFFIX)] + CHECKSUM_SUFFIX)

def prepare_destination(destination: Path) -> Path:
    """Create the destination directory and make sure we can write to it."""
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DestinationError(f"Cannot create backup directory '{destination}': {e}") from e
    if not destination.is_dir() or not os.access(destination, os.W_OK | os.X_OK):
        raise DestinationError(f"Backup directory '{destination}' is not writable.")
    return destination

@contextmanager
def destination_lock(destination: Path) -> Generator[None, None, None]:
    """Hold an exclusive advisory lock on the destination for the duration of a run."""
    try:
        handle = (destination / LOCK_NAME).open("a")
    except OSError as e:
        raise DestinationError(f"Cannot open lock file in '{destination}': {e}") from e
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise BackupLockedError(f"Another backup is already running against '{destination}'.") from e
        yield
    finally:
        handle.close()

def _copy_path(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest, follow_symlinks=False)

def _discard(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)

def stage_entry(entry: BackupManifestEntry, staging_dir: Path) -> Optional[str]:
    """
    Copy one manifest entry into the staging tree.
    Returns None on success or the reason the entry was skipped.
    """
    dest = staging_dir / entry.archive_relative_path

    if entry.is_glob:
        sources = [Path(m) for m in sorted(glob.glob(entry.source_path))]
        if not sources:
            return "no matches"
        targets = [(src, dest / src.name) for src in sources]
    else:
        src = Path(entry.source_path)
        if not src.exists() and not src.is_symlink():
            return "not found"
        targets = [(src, dest)]

    try:
        for src, target in targets:
            _copy_path(src, target)
    except OSError as e:
        _discard(dest)
        return _skip_reason(e, entry.source_path)
    return None

def _skip_reason(error: OSError, source_path: str) -> str:
    if isinstance(error, PermissionError):
        return f"permission denied: {error.filename or source_path}"
    # copytree collects per-file failures as (src, dst, str(error)) tuples.
    if isinstance(error, shutil.Error) and error.args and isinstance(error.args[0], list):
        denied = [src for src, _, why in error.args[0] if f"[Errno {errno.EACCES}]" in str(why)]
        if denied:
            return f"permission denied: {denied[0]}"
    return f"copy failed: {error}"

def stage_entries(
    manifest: Sequence[BackupManifestEntry], staging_dir: Path
) -> Tuple[List[str], List[SkippedEntry]]:
    staged: List[str] = []
    skipped: List[SkippedEntry] = []
    for entry in manifest:
        reason = stage_entry(entry, staging_dir)
        if reason is None:
            staged.append(entry.archive_relative_path)
        else:
            skipped.append(SkippedEntry(source_path=entry.source_path, reason=reason))
    return staged, skipped

def create_archive(staging_dir: Path, archive_path: Path) -> None:
    """Compress the staging tree into archive_path, all or nothing."""
    partial = archive_path.with_name(f".{archive_path.name}.partial")
    try:
        with tarfile.open(partial, "w:gz") as tar:
            for child in sorted(staging_dir.iterdir()):
                tar.add(child, arcname=child.name)
        os.replace(partial, archive_path)
    except (OSError, tarfile.TarError) as e:
        partial.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to create archive '{archive_path.name}': {e}") from e

def write_checksum(archive_path: Path) -> Tuple[str, Path]:
    """Write a sha256sum-compatible checksum file next to the finished archive."""
    target = checksum_path_for(archive_path)
    partial = target.with_name(f".{target.name}.partial")
    try:
        digest = sha256_file(archive_path)
        partial.write_text(f"{digest}  {archive_path.name}\n", encoding="utf-8")
        os.replace(partial, target)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to write checksum for '{archive_path.name}': {e}") from e
    return digest, target

def read_checksum(checksum_path: Path) -> str:
    content = checksum_path.read_text(encoding="utf-8").split()
    if not content:
        raise ValueError(f"Empty checksum file: {checksum_path}")
    return content[0].lower()

def verify_archive(archive_path: Path) -> bool:
    """Recompute the archive digest and compare it with its checksum file."""
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.exists():
        raise FileNotFoundError(f"No checksum file for {archive_path.name}")
    return sha256_file(archive_path) == read_checksum(checksum_path)

def _remove(path: Path, logger: AuditLogger) -> bool:
    """Delete path. False if someone else already did or it cannot be removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.log("backup_prune_failed", file=path.name, error=str(e))
        return False

def _expired_files(
    destination: Path, cutoff: datetime, prefix: str, keep: Iterable[str]
) -> List[Path]:
    keep = set(keep)
    expired: List[Path] = []
    limit = cutoff.timestamp()

    for archive in sorted(destination.glob(f"{prefix}-*{ARCHIVE_SUFFIX}")):
        if archive.name in keep or not archive.is_file() or archive.stat().st_mtime >= limit:
            continue
        expired.append(archive)
        checksum = checksum_path_for(archive)
        if checksum.is_file():
            expired.append(checksum)

    for checksum in sorted(destination.glob(f"{prefix}-*{CHECKSUM_SUFFIX}")):
        archive = checksum.with_name(checksum.name[: -len(CHECKSUM_SUFFIX)] + ARCHIVE_SUFFIX)
        if archive.exists() or checksum in expired or not checksum.is_file():
            continue
        if checksum.stat().st_mtime < limit:
            expired.append(checksum)
    return expired

def prune_archives(
    destination: Path,
    retention_days: int,
    now: Optional[datetime] = None,
    prefix: str = DEFAULT_PREFIX,
    keep: Iterable[str] = (),
    logger: Optional[AuditLogger] = None,
) -> List[str]:
    """
    Delete archives (and their checksum files) whose mtime is more than
    retention_days old. Returns the names actually removed by this call.
    Files that cannot be removed are logged and left in place.
    """
    logger = logger or AuditLogger()
    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    return [p.name for p in _expired_files(destination, cutoff, prefix, keep) if _remove(p, logger)]

def list_archives(destination: Path, prefix: str = DEFAULT_PREFIX) -> List[ArchiveInfo]:
    """Archives in destination, oldest first."""
    if not destination.is_dir():
        return []
    infos = []
    for archive in destination.glob(f"{prefix}-*{ARCHIVE_SUFFIX}"):
        if not archive.is_file():
            continue
        st = archive.stat()
        infos.append(ArchiveInfo(
            name=archive.name,
            path=str(archive),
            size_bytes=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime),
            has_checksum=checksum_path_for(archive).exists(),
        ))
    return sorted(infos, key=lambda i: (i.modified_at, i.name))

def run_backup(
    manifest: Sequence[BackupManifestEntry],
    destination_dir: Path,
    retention_days: int,
    now: Optional[datetime] = None,
    prefix: str = DEFAULT_PREFIX,
    lock: bool = True,
    staging_parent: Optional[Path] = None,
) -> Archive:
    """
    Back up every present manifest source into one timestamped archive in
    destination_dir, then prune archives older than retention_days.
    Raises BackupError subclasses only for destination or archive failures.
    """
    now = now or datetime.now()
    destination = prepare_destination(Path(destination_dir))
    logger = AuditLogger()

    if not lock:
        return _run_unlocked(manifest, destination, retention_days, now, prefix, staging_parent, logger)
    with destination_lock(destination):
        return _run_unlocked(manifest, destination, retention_days, now, prefix, staging_parent, logger)

def _run_unlocked(
    manifest: Sequence[BackupManifestEntry],
    destination: Path,
    retention_days: int,
    now: datetime,
    prefix: str,
    staging_parent: Optional[Path],
    logger: AuditLogger,
) -> Archive:
    name = archive_name(now, prefix)
    archive_path = destination / f"{name}{ARCHIVE_SUFFIX}"
    if os.path.lexists(archive_path) or os.path.lexists(checksum_path_for(archive_path)):
        raise ArchiveError(f"Archive '{archive_path.name}' already exists in '{destination}'.")

    try:
        staging_dir = Path(tempfile.mkdtemp(prefix=f"{name}-", dir=staging_parent))
    except OSError as e:
        raise ArchiveError(f"Cannot create staging directory: {e}") from e
    try:
        staged, skipped = stage_entries(manifest, staging_dir)
        for s in skipped:
            logger.log("backup_skipped_entry", source=s.source_path, reason=s.reason)
        try:
            create_archive(staging_dir, archive_path)
            try:
                digest, checksum_path = write_checksum(archive_path)
            except ArchiveError:
                archive_path.unlink(missing_ok=True)
                raise
        except ArchiveError as e:
            logger.log("backup_failed", name=name, error=str(e))
            raise
    finally:
        shutil.rmtree(staging_dir, ignore_errors=True)

    size = archive_path.stat().st_size
    logger.log("backup_created", name=name, size=size, sha256=digest, skipped=len(skipped))

    pruned = prune_archives(destination, retention_days, now, prefix, keep=[archive_path.name], logger=logger)
    if pruned:
        logger.log("backup_pruned", files=pruned, retention_days=retention_days)

    return Archive(
        name=name,
        path=str(archive_path),
        checksum_path=str(checksum_path),
        size_bytes=size,
        checksum=digest,
        created_at=now,
        staged=staged,
        skipped=skipped,
        pruned=pruned,
    )
