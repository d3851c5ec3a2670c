"""
Command Line Interface entry point using Typer.
"""
from pathlib import Path
from typing import List, Optional

import typer

from . import __version__
from .config import get_config_path, load_config, save_config
from .errors import BackupError, ConfigError, OpsCheckError
from .models import AppConfig, CheckMode
from .ui import (
    confirm,
    console,
    render_error,
    render_header,
    render_report,
    render_status,
    render_summary,
    render_table,
    render_warning,
)
from .utils import hostname, human_age, human_size, is_root

app = typer.Typer(
    help=(
        "[bold cyan]opscheck[/]\n\n"
        "Host health checks, configuration backups and Docker cleanup."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich"
)
config_app = typer.Typer(help="Inspect or initialise the configuration file.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def _load_config() -> AppConfig:
    try:
        return load_config()
    except ConfigError as e:
        render_error(str(e))
        raise typer.Exit(1)

@app.command(name="health")
def health_cmd(
    brief: bool = typer.Option(False, "--brief/--full", help="Brief runs only the service, disk, memory and CPU checks."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.1, help="Per-check timeout in seconds"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON."),
):
    """
    Run the system health checks.
    Exits 1 when any check reports an issue.
    """
    from .health import run_health

    config = _load_config()
    mode = CheckMode.BRIEF if brief else CheckMode.FULL

    if json_output:
        report = run_health(config.health, mode, timeout=timeout)
        typer.echo(report.model_dump_json(indent=2))
    else:
        render_header(f"System Health Check - {hostname()}", f"mode: {mode.value}")
        with console.status("[cyan]Running health checks..."):
            report = run_health(config.health, mode, timeout=timeout)
        render_report(report)

    raise typer.Exit(1 if report.issue_count > 0 else 0)

@app.command(name="backup")
def backup_cmd(
    destination: Optional[Path] = typer.Argument(None, help="Backup directory (defaults to the configured destination)"),
    retention_days: Optional[int] = typer.Option(None, "--retention-days", "-r", min=0, help="Delete archives older than this many days"),
):
    """
    Back up configuration files into a timestamped, checksummed archive.
    Must be run as root.
    """
    from .backup import run_backup

    if not is_root():
        render_error("This command must be run as root.")
        raise typer.Exit(1)

    config = _load_config().backup
    dest = destination or Path(config.destination)
    retention = config.retention_days if retention_days is None else retention_days

    render_header("Configuration Backup", f"Backup directory: {dest}")
    try:
        with console.status("[cyan]Backing up configuration files..."):
            archive = run_backup(config.manifest, dest, retention, prefix=config.prefix)
    except BackupError as e:
        render_error(str(e))
        raise typer.Exit(1)

    for staged in archive.staged:
        render_status("success", f"Backed up: {staged}", "green")
    for skipped in archive.skipped:
        render_status("warn", f"Skipping ({skipped.reason}): {skipped.source_path}", "yellow")
    for pruned in archive.pruned:
        render_status("delete", f"Rotated out: {pruned}", "dim")

    render_summary("Backup Summary", {
        "Location": archive.path,
        "Size": human_size(archive.size_bytes),
        "SHA-256": archive.checksum,
        "Timestamp": archive.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        "Skipped": str(len(archive.skipped)),
        "Rotated out": str(len(archive.pruned)),
    })
    console.print(f"\nTo restore, extract the archive:\n  sudo tar xzf {archive.path} -C <target>\n")

@app.command(name="verify")
def verify_cmd(archive: Path = typer.Argument(..., exists=True, dir_okay=False, help="Archive to verify")):
    """Check an archive against its .sha256 file."""
    from .backup import verify_archive

    try:
        ok = verify_archive(archive)
    except (OSError, ValueError) as e:
        render_error(str(e))
        raise typer.Exit(1)
    if not ok:
        render_error(f"Checksum mismatch for {archive.name}")
        raise typer.Exit(1)
    render_status("verify", f"{archive.name}: OK", "green")

@app.command(name="backups")
def list_backups_cmd(destination: Optional[Path] = typer.Argument(None, help="Backup directory")):
    """List archives in the backup directory."""
    from datetime import datetime

    from .backup import list_archives

    config = _load_config().backup
    dest = destination or Path(config.destination)
    archives = list_archives(dest, config.prefix)
    if not archives:
        render_status("info", f"No backups found in {dest}.")
        return

    now = datetime.now()
    rows = [
        [
            a.name,
            human_size(a.size_bytes),
            human_age((now - a.modified_at).total_seconds()),
            "yes" if a.has_checksum else "[red]missing[/]",
        ]
        for a in archives
    ]
    render_table(f"Backups in {dest}", ["Archive", "Size", "Age", "Checksum"], rows)
    console.print(f"Total backups: {len(archives)}")

def _render_disk_usage(usage: dict) -> None:
    rows = [[kind, human_size(size)] for kind, size in usage.items()]
    render_table("Docker Disk Usage", ["Type", "Size"], rows)

@app.command(name="cleanup")
def cleanup_cmd(
    containers: bool = typer.Option(False, "--containers", help="Clean up stopped containers"),
    images: bool = typer.Option(False, "--images", help="Clean up dangling images"),
    volumes: bool = typer.Option(False, "--volumes", help="Clean up unused volumes (with confirmation)"),
    networks: bool = typer.Option(False, "--networks", help="Clean up unused networks"),
    all_: bool = typer.Option(False, "--all", help="Clean up everything, including every unused image"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed without removing"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Safely clean up Docker resources."""
    from .cleanup import cleanup, select_kinds
    from .docker import DockerClient

    kinds = select_kinds(containers, images, volumes, networks, all_)
    config = _load_config()

    render_header("Docker Cleanup Utility", "DRY RUN - No changes will be made" if dry_run else None)

    confirmed = yes
    if all_ and not dry_run and not yes:
        render_warning(
            "This will remove all stopped containers, all unused networks, "
            "all images without at least one container and all unused volumes."
        )
        if not confirm("Continue?"):
            render_status("warn", "Cleanup cancelled", "yellow")
            raise typer.Exit(0)
        confirmed = True

    def confirm_volumes(candidates: List[str]) -> bool:
        if confirmed:
            return True
        render_warning(f"This will permanently delete {len(candidates)} volume(s) and their data!")
        return confirm("Are you sure?")

    try:
        with DockerClient(config.health.docker_socket) as client:
            _render_disk_usage(client.disk_usage())
            results = cleanup(client, kinds, dry_run=dry_run, all_images=all_, confirm_volumes=confirm_volumes)
            if not dry_run:
                _render_disk_usage(client.disk_usage())
    except OpsCheckError as e:
        render_error(str(e))
        raise typer.Exit(1)

    for r in results:
        if not r.candidates:
            render_status("success", f"No {r.kind} to remove", "green")
        elif r.dry_run:
            render_status("warn", f"Would remove {len(r.candidates)} {r.kind}:", "yellow")
            for c in r.candidates:
                console.print(f"  - {c}")
        elif r.skipped_reason:
            render_status("warn", r.skipped_reason, "yellow")
        else:
            render_status("success", f"Removed {len(r.removed)} {r.kind} ({human_size(r.reclaimed_bytes)} reclaimed)", "green")

@app.command(name="audit")
def show_audit(last_n: int = typer.Option(50, "--last", "-n", help="Number of recent events to show")):
    """Show recent audit log events."""
    from .audit import get_audit_log

    events = get_audit_log(last_n)
    if not events:
        render_status("info", "No audit events found.")
        return

    rows = [[e["timestamp"], e["event"], str(e["details"])] for e in events]
    render_table("Audit Log", ["Timestamp", "Event", "Details"], rows)

@config_app.command(name="show")
def config_show():
    """Print the effective configuration."""
    typer.echo(_load_config().model_dump_json(indent=2))

@config_app.command(name="init")
def config_init(force: bool = typer.Option(False, "--force", help="Overwrite an existing config file")):
    """Write the default configuration file."""
    path = get_config_path()
    if path.exists() and not force:
        render_error(f"{path} already exists. Use --force to overwrite it.")
        raise typer.Exit(1)
    save_config(AppConfig(), path)
    render_status("success", f"Wrote default configuration to {path}", "green")

@app.command(name="version")
def version_cmd():
    """Display opscheck version information."""
    typer.echo(f"opscheck {__version__}")

if __name__ == "__main__":
    app()
