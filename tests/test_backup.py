import hashlib
import os
import shutil
import tarfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

import opscheck.backup as backup
from opscheck.audit import get_audit_log
from opscheck.backup import (
    archive_name,
    destination_lock,
    list_archives,
    prune_archives,
    read_checksum,
    run_backup,
    verify_archive,
)
from opscheck.errors import ArchiveError, BackupLockedError, DestinationError
from opscheck.models import BackupManifestEntry


def entry(src, dest) -> BackupManifestEntry:
    return BackupManifestEntry(source_path=str(src), archive_relative_path=dest)

def archive_files(archive_path: str) -> list:
    with tarfile.open(archive_path, "r:gz") as tar:
        return sorted(m.name for m in tar.getmembers() if m.isfile())

def backup_files(dest: Path) -> list:
    return sorted(p.name for p in dest.iterdir() if not p.name.startswith("."))

def age_files(*paths: Path, days: float) -> None:
    ts = (datetime.now() - timedelta(days=days)).timestamp()
    for p in paths:
        os.utime(p, (ts, ts))

def make_old_backup(dest: Path, days: float, with_checksum: bool = True) -> str:
    name = archive_name(datetime.now() - timedelta(days=days))
    archive = dest / f"{name}.tar.gz"
    archive.write_bytes(b"old archive")
    paths = [archive]
    if with_checksum:
        checksum = dest / f"{name}.sha256"
        checksum.write_text(f"{hashlib.sha256(b'old archive').hexdigest()}  {archive.name}\n")
        paths.append(checksum)
    age_files(*paths, days=days)
    return name


@pytest.fixture
def etc(tmp_path: Path) -> Path:
    root = tmp_path / "etc"
    (root / "samba").mkdir(parents=True)
    (root / "samba" / "smb.conf").write_text("[global]\nworkgroup = HOME\n")
    (root / "prometheus" / "rules").mkdir(parents=True)
    (root / "prometheus" / "prometheus.yml").write_text("scrape_configs: []\n")
    (root / "prometheus" / "rules" / "node.yml").write_text("groups: []\n")
    (root / "systemd" / "system").mkdir(parents=True)
    for unit in ("backup.service", "exporter.service", "backup.timer"):
        (root / "systemd" / "system" / unit).write_text(f"# {unit}\n")
    return root

@pytest.fixture
def dest(tmp_path: Path) -> Path:
    return tmp_path / "backups"


def test_example_scenario(etc: Path, dest: Path, tmp_path: Path):
    manifest = [
        entry(etc / "samba" / "smb.conf", "samba/smb.conf"),
        entry(tmp_path / "nonexistent", "x/y"),
    ]
    archive = run_backup(manifest, dest, retention_days=7)

    assert archive_files(archive.path) == ["samba/smb.conf"]
    assert archive.staged == ["samba/smb.conf"]
    assert [s.source_path for s in archive.skipped] == [str(tmp_path / "nonexistent")]
    assert archive.skipped[0].reason == "not found"
    assert archive.pruned == []
    assert backup_files(dest) == [f"{archive.name}.sha256", f"{archive.name}.tar.gz"]

def test_archive_name_comes_from_timestamp(etc: Path, dest: Path):
    now = datetime(2026, 3, 14, 15, 9, 26)
    archive = run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7, now=now)

    assert archive.name == "config-backup-20260314_150926"
    assert Path(archive.path).name == "config-backup-20260314_150926.tar.gz"
    assert Path(archive.checksum_path).name == "config-backup-20260314_150926.sha256"
    assert archive.created_at == now

def test_checksum_matches_archive_on_disk(etc: Path, dest: Path):
    archive = run_backup([entry(etc / "prometheus", "prometheus")], dest, 7)

    with open(archive.path, "rb") as f:
        digest = hashlib.sha256(f.read()).hexdigest()
    assert archive.checksum == digest
    assert read_checksum(Path(archive.checksum_path)) == digest
    assert Path(archive.checksum_path).read_text() == f"{digest}  {Path(archive.path).name}\n"
    assert verify_archive(Path(archive.path))
    assert archive.size_bytes == Path(archive.path).stat().st_size

def test_verify_detects_tampering(etc: Path, dest: Path):
    archive = run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7)
    with open(archive.path, "ab") as f:
        f.write(b"garbage")
    assert not verify_archive(Path(archive.path))

def test_directories_are_copied_recursively(etc: Path, dest: Path):
    archive = run_backup([entry(etc / "prometheus", "monitoring/prometheus")], dest, 7)
    assert archive_files(archive.path) == [
        "monitoring/prometheus/prometheus.yml",
        "monitoring/prometheus/rules/node.yml",
    ]

def test_glob_sources_expand_into_directory(etc: Path, dest: Path):
    manifest = [
        entry(etc / "systemd" / "system" / "*.service", "systemd/custom-services"),
        entry(etc / "nothing" / "*.conf", "nothing"),
    ]
    archive = run_backup(manifest, dest, 7)

    assert archive_files(archive.path) == [
        "systemd/custom-services/backup.service",
        "systemd/custom-services/exporter.service",
    ]
    assert [(s.source_path, s.reason) for s in archive.skipped] == [
        (str(etc / "nothing" / "*.conf"), "no matches"),
    ]

def test_manifest_order_is_preserved(etc: Path, dest: Path):
    manifest = [
        entry(etc / "samba" / "smb.conf", "samba/smb.conf"),
        entry(etc / "prometheus", "prometheus"),
        entry(etc / "systemd" / "system" / "backup.timer", "systemd/backup.timer"),
    ]
    archive = run_backup(manifest, dest, 7)
    assert archive.staged == ["samba/smb.conf", "prometheus", "systemd/backup.timer"]

def test_permission_denied_is_a_skip(etc: Path, dest: Path, monkeypatch):
    real_copy2 = shutil.copy2

    def guarded(src, dst, *args, **kwargs):
        if str(src).endswith("smb.conf"):
            raise PermissionError(13, "Permission denied", str(src))
        return real_copy2(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "copy2", guarded)
    manifest = [
        entry(etc / "samba" / "smb.conf", "samba/smb.conf"),
        entry(etc / "systemd" / "system" / "backup.timer", "systemd/backup.timer"),
    ]
    archive = run_backup(manifest, dest, 7)

    assert archive_files(archive.path) == ["systemd/backup.timer"]
    assert archive.skipped[0].reason.startswith("permission denied")
    assert any(e["event"] == "backup_skipped_entry" for e in get_audit_log())

def test_staging_tree_is_removed(etc: Path, dest: Path, tmp_path: Path):
    staging = tmp_path / "staging"
    staging.mkdir()
    manifest = [entry(etc / "prometheus", "prometheus"), entry(tmp_path / "missing", "missing")]

    run_backup(manifest, dest, 7, staging_parent=staging)
    assert list(staging.iterdir()) == []

def test_archive_failure_is_fatal_and_leaves_nothing(etc: Path, dest: Path, tmp_path: Path, monkeypatch):
    staging = tmp_path / "staging"
    staging.mkdir()

    def broken_open(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(backup.tarfile, "open", broken_open)
    with pytest.raises(ArchiveError):
        run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7, staging_parent=staging)

    assert backup_files(dest) == []
    assert [p for p in dest.iterdir() if p.name.endswith(".partial")] == []
    assert list(staging.iterdir()) == []
    assert get_audit_log()[-1]["event"] == "backup_failed"

def test_checksum_failure_removes_archive(etc: Path, dest: Path, monkeypatch):
    def unreadable(path):
        raise OSError("I/O error")

    monkeypatch.setattr(backup, "sha256_file", unreadable)
    with pytest.raises(ArchiveError):
        run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7)

    assert backup_files(dest) == []

def test_unusable_destination_is_fatal(etc: Path, tmp_path: Path):
    not_a_dir = tmp_path / "backups"
    not_a_dir.write_text("I am a file")

    with pytest.raises(DestinationError):
        run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], not_a_dir, 7)
    with pytest.raises(DestinationError):
        run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], not_a_dir / "nested", 7)

def test_missing_sources_never_fatal(dest: Path, tmp_path: Path):
    archive = run_backup([entry(tmp_path / "a", "a"), entry(tmp_path / "b", "b")], dest, 7)

    assert archive.staged == []
    assert len(archive.skipped) == 2
    assert archive_files(archive.path) == []
    assert verify_archive(Path(archive.path))

def test_retention_deletes_only_expired_pairs(etc: Path, dest: Path):
    dest.mkdir()
    old = {days: make_old_backup(dest, days) for days in (10, 8, 6, 1)}

    archive = run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, retention_days=7)

    assert sorted(archive.pruned) == sorted(
        f"{old[d]}{suffix}" for d in (10, 8) for suffix in (".tar.gz", ".sha256")
    )
    assert backup_files(dest) == sorted(
        f"{name}{suffix}"
        for name in (old[6], old[1], archive.name)
        for suffix in (".tar.gz", ".sha256")
    )

def test_orphans_are_pruned_by_age(dest: Path):
    dest.mkdir()
    orphan_archive = make_old_backup(dest, 9, with_checksum=False)
    fresh_archive = make_old_backup(dest, 2, with_checksum=False)

    orphan_checksum = dest / f"{archive_name(datetime.now() - timedelta(days=12))}.sha256"
    orphan_checksum.write_text("0" * 64 + "  gone.tar.gz\n")
    age_files(orphan_checksum, days=12)
    fresh_checksum = dest / f"{archive_name(datetime.now() - timedelta(days=3))}.sha256"
    fresh_checksum.write_text("0" * 64 + "  gone.tar.gz\n")
    age_files(fresh_checksum, days=3)

    pruned = prune_archives(dest, retention_days=7)

    assert sorted(pruned) == sorted([f"{orphan_archive}.tar.gz", orphan_checksum.name])
    assert backup_files(dest) == sorted([f"{fresh_archive}.tar.gz", fresh_checksum.name])

def test_pruning_ignores_unrelated_files(dest: Path):
    dest.mkdir()
    stranger = dest / "notes.tar.gz"
    stranger.write_text("keep me")
    age_files(stranger, days=30)

    assert prune_archives(dest, retention_days=7) == []
    assert stranger.exists()

def test_list_archives_oldest_first(dest: Path):
    dest.mkdir()
    newer = make_old_backup(dest, 1)
    older = make_old_backup(dest, 5, with_checksum=False)

    infos = list_archives(dest)
    assert [i.name for i in infos] == [f"{older}.tar.gz", f"{newer}.tar.gz"]
    assert [i.has_checksum for i in infos] == [False, True]
    assert list_archives(dest / "absent") == []

def test_concurrent_run_is_refused_while_locked(etc: Path, dest: Path):
    dest.mkdir()
    with destination_lock(dest):
        with pytest.raises(BackupLockedError):
            run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7)

    # released afterwards
    run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, 7)

def test_unlocked_runs_race_on_retention(etc: Path, dest: Path, monkeypatch):
    dest.mkdir()
    old = make_old_backup(dest, 10)
    manifest = [entry(etc / "samba" / "smb.conf", "samba/smb.conf")]

    real_expired = backup._expired_files
    seen = []

    def interleaved(*args, **kwargs):
        expired = real_expired(*args, **kwargs)
        seen.append([p.name for p in expired])
        if len(seen) == 1:
            # a second run slips in between listing and deleting
            inner = run_backup(manifest, dest, 7, now=datetime.now() + timedelta(seconds=1), lock=False)
            seen.append(inner.pruned)
        return expired

    monkeypatch.setattr(backup, "_expired_files", interleaved)
    outer = run_backup(manifest, dest, 7, lock=False)

    expected = sorted([f"{old}.tar.gz", f"{old}.sha256"])
    # both runs selected the same files for deletion; only one of them got to remove them
    assert sorted(seen[0]) == expected
    assert sorted(seen[-1]) == expected
    assert outer.pruned == []

def test_locked_runs_do_not_interleave(etc: Path, dest: Path, monkeypatch):
    dest.mkdir()
    make_old_backup(dest, 10)
    manifest = [entry(etc / "samba" / "smb.conf", "samba/smb.conf")]

    real_expired = backup._expired_files
    errors = []

    def interleaved(*args, **kwargs):
        try:
            run_backup(manifest, dest, 7, now=datetime.now() + timedelta(seconds=1))
        except BackupLockedError as e:
            errors.append(e)
        return real_expired(*args, **kwargs)

    monkeypatch.setattr(backup, "_expired_files", interleaved)
    outer = run_backup(manifest, dest, 7)

    assert len(errors) == 1
    assert len(outer.pruned) == 2

@pytest.mark.parametrize("src, dest_path", [
    ("etc/hosts", "system/hosts"),
    ("/etc/hosts", "/system/hosts"),
    ("/etc/hosts", "../escape"),
    ("/etc/hosts", ""),
])
def test_manifest_entry_validation(src, dest_path):
    with pytest.raises(ValidationError):
        BackupManifestEntry(source_path=src, archive_relative_path=dest_path)

def test_unremovable_expired_files_do_not_fail_the_run(etc: Path, dest: Path, monkeypatch):
    dest.mkdir()
    stray = dest / f"{archive_name(datetime(2000, 1, 1))}.tar.gz"
    stray.mkdir()
    age_files(stray, days=365)
    stuck = make_old_backup(dest, 10)
    gone = make_old_backup(dest, 9)

    real_unlink = Path.unlink

    def immutable(self, *args, **kwargs):
        if self.name == f"{stuck}.tar.gz":
            raise PermissionError(1, "Operation not permitted", str(self))
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", immutable)
    archive = run_backup([entry(etc / "samba" / "smb.conf", "samba/smb.conf")], dest, retention_days=7)

    assert sorted(archive.pruned) == sorted([f"{gone}.tar.gz", f"{gone}.sha256", f"{stuck}.sha256"])
    assert stray.is_dir()
    assert (dest / f"{stuck}.tar.gz").exists()
    assert verify_archive(Path(archive.path))
    failures = [e for e in get_audit_log() if e["event"] == "backup_prune_failed"]
    assert [e["details"]["file"] for e in failures] == [f"{stuck}.tar.gz"]

def test_same_second_run_does_not_overwrite(etc: Path, dest: Path):
    now = datetime(2026, 1, 1)
    manifest = [entry(etc / "samba" / "smb.conf", "samba/smb.conf")]
    first = run_backup(manifest, dest, 7, now=now)

    with pytest.raises(ArchiveError, match="already exists"):
        run_backup([entry(etc / "prometheus", "prometheus")], dest, 7, now=now)

    assert archive_files(first.path) == ["samba/smb.conf"]
    assert verify_archive(Path(first.path))

def test_partial_directory_copy_denied_is_a_skip(etc: Path, dest: Path, monkeypatch):
    denied = str(etc / "prometheus" / "rules" / "node.yml")

    def partly_unreadable(src, dst, **kwargs):
        raise shutil.Error([(denied, str(dst), f"[Errno 13] Permission denied: '{denied}'")])

    monkeypatch.setattr(backup.shutil, "copytree", partly_unreadable)
    archive = run_backup([entry(etc / "prometheus", "prometheus")], dest, 7)

    assert archive.staged == []
    assert archive.skipped[0].reason == f"permission denied: {denied}"
    assert archive_files(archive.path) == []
