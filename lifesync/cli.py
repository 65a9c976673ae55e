"""
Operator CLI for a lifesync store.

Usage:
    lifesync status
    lifesync sync
    lifesync blob put note1 image photo.png
    lifesync restore
"""

import json
import mimetypes
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import LifeStore
from .logging_config import configure_quiet_mode, enable_debug_mode, verbose_requested
from .types import SyncResult

# Configure quiet mode by default (suppress verbose library output)
# Set LIFESYNC_VERBOSE=1 to enable debug mode via environment
if verbose_requested():
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"lifesync {version('lifesync')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="lifesync",
    help="Local-first blob cache and sync engine.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="LIFESYNC_STORE_PATH",
        help="Path to the store directory (default: ~/.lifesync/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Local-first blob cache and sync engine."""


@contextmanager
def _open_store():
    """Open the store for one command, handling errors gracefully."""
    from .errors import ConfigError
    try:
        store = LifeStore(_get_store_override())
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    try:
        yield store
    finally:
        store.close()


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2))


def _echo_result(result: SyncResult, label: str) -> None:
    """Print a sync/upload result; exit 1 when it failed."""
    if _get_json_output():
        _echo_json(result.to_dict())
    elif result.skipped:
        typer.echo(f"{label} already in progress, skipped.")
        typer.echo("If no other process is syncing, run: lifesync reset-metadata", err=True)
    elif result.ok:
        typer.echo(
            f"{label} complete: {result.items} items "
            f"({result.items_updated} updated, {result.items_created} created, "
            f"{result.items_failed} failed), {result.categories} categories, "
            f"{result.conflicts} conflicts"
        )
    else:
        typer.echo(f"{label} failed: {result.error}", err=True)
    if not result.ok and not result.skipped:
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Sync
# -----------------------------------------------------------------------------

@app.command()
def status():
    """Show sync status and blob storage usage."""
    with _open_store() as ls:
        sync_status = ls.sync.status()
        stats = ls.blobs.stats()
        backups = ls.snapshots.list_backups()
        data = {
            "store": str(ls.config.path),
            "remote": ls.config.remote.api_url or None,
            "last_sync": sync_status.last_sync,
            "in_progress": sync_status.in_progress,
            "error": sync_status.error,
            "items": len(ls.snapshots.load_items()),
            "categories": len(ls.snapshots.load_categories()),
            "blobs": stats.count,
            "blob_bytes": stats.total_bytes,
            "available_bytes": stats.available_estimate,
            "backups": len(backups),
        }
    if _get_json_output():
        _echo_json(data)
        return
    typer.echo(f"Store:      {data['store']}")
    typer.echo(f"Remote:     {data['remote'] or '(not configured)'}")
    typer.echo(f"Last sync:  {data['last_sync'] or 'never'}"
               + (" (in progress)" if data["in_progress"] else ""))
    if data["error"]:
        typer.echo(f"Last error: {data['error']}")
    typer.echo(f"Items:      {data['items']} ({data['categories']} categories)")
    typer.echo(f"Blobs:      {data['blobs']} ({data['blob_bytes'] / 1024:.1f}KB, "
               f"{data['available_bytes'] / 1024:.1f}KB available)")
    typer.echo(f"Backups:    {data['backups']}")


@app.command()
def sync():
    """Run one sync pass now."""
    with _open_store() as ls:
        result = ls.sync.manual_sync()
    _echo_result(result, "Sync")


@app.command()
def resync():
    """Forget the last sync time and run a full sync."""
    with _open_store() as ls:
        result = ls.sync.force_resync()
    _echo_result(result, "Resync")


@app.command("upload-all")
def upload_all():
    """Push every local record to the remote without merging."""
    with _open_store() as ls:
        result = ls.sync.safe_upload_all()
    _echo_result(result, "Upload")


@app.command()
def backups():
    """List snapshot backups, newest first."""
    with _open_store() as ls:
        timestamps = ls.snapshots.list_backups()
    if _get_json_output():
        _echo_json(timestamps)
        return
    if not timestamps:
        typer.echo("No backups.")
    for ts in timestamps:
        typer.echo(ts)


@app.command()
def restore(
    timestamp: Annotated[Optional[str], typer.Argument(
        help="Backup timestamp (default: latest)"
    )] = None,
):
    """Restore items and categories from a backup."""
    with _open_store() as ls:
        restored = ls.sync.restore_from_backup(timestamp)
    if not restored:
        typer.echo("Nothing restored (no such backup, or a sync is in progress).", err=True)
        raise typer.Exit(1)
    typer.echo(f"Restored backup {timestamp or '(latest)'}")


@app.command("reset-metadata")
def reset_metadata():
    """Delete sync metadata; the next sync runs as a first sync."""
    with _open_store() as ls:
        ls.sync.reset_metadata()
    typer.echo("Sync metadata reset.")


# -----------------------------------------------------------------------------
# Blobs
# -----------------------------------------------------------------------------

blob_app = typer.Typer(
    name="blob",
    help="Inspect and manage stored blobs.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(blob_app)


def _read_blob_file(path: Path):
    from .types import BlobFile
    mime_type, _ = mimetypes.guess_type(path.name)
    return BlobFile(
        data=path.read_bytes(),
        mime_type=mime_type or "application/octet-stream",
        filename=path.name,
    )


@blob_app.command("put")
def blob_put(
    owner: Annotated[str, typer.Argument(help="Owner id (e.g. an item id)")],
    kind: Annotated[str, typer.Argument(help="Blob kind (image, audio)")],
    files: Annotated[list[Path], typer.Argument(
        help="Files to store as the group, in order",
        exists=True, dir_okay=False, readable=True,
    )],
):
    """Store files as a blob group, replacing any previous group."""
    blob_files = [_read_blob_file(p) for p in files]
    with _open_store() as ls:
        refs = ls.blobs.put_group(owner, kind, blob_files)
    persisted = sum(1 for r in refs if r.persisted)
    if _get_json_output():
        _echo_json([
            {"key": r.key, "persisted": r.persisted, "compressed": r.compressed}
            for r in refs
        ])
    else:
        for path, ref in zip(files, refs):
            state = "stored" if ref.persisted else "NOT stored (quota)"
            extra = ", compressed" if ref.compressed else ""
            typer.echo(f"{path.name}: {state}{extra}")
    if persisted < len(refs):
        raise typer.Exit(1)


@blob_app.command("get")
def blob_get(
    owner: Annotated[str, typer.Argument(help="Owner id")],
    kind: Annotated[str, typer.Argument(help="Blob kind")],
    out: Annotated[Path, typer.Option(
        "--out", "-o", help="Directory to write files into",
        file_okay=False,
    )] = Path("."),
):
    """Write a stored blob group out as files."""
    with _open_store() as ls:
        blob_files = ls.blobs.to_files(owner, kind)
    if not blob_files:
        typer.echo(f"No {kind} blobs for {owner}", err=True)
        raise typer.Exit(1)
    out.mkdir(parents=True, exist_ok=True)
    written = []
    for i, f in enumerate(blob_files):
        name = Path(f.filename).name if f.filename else ""
        if not name:
            ext = mimetypes.guess_extension(f.mime_type) or ".bin"
            name = f"{owner}_{kind}_{i}{ext}"
        path = out / name
        path.write_bytes(f.data)
        written.append(str(path))
    if _get_json_output():
        _echo_json(written)
    else:
        for p in written:
            typer.echo(p)


@blob_app.command("rm")
def blob_rm(
    owner: Annotated[str, typer.Argument(help="Owner id")],
    kind: Annotated[str, typer.Argument(help="Blob kind")],
):
    """Remove a stored blob group."""
    with _open_store() as ls:
        removed = ls.blobs.remove(owner, kind)
    typer.echo(f"Removed {removed} blob(s)")


@blob_app.command("stats")
def blob_stats():
    """Show blob storage usage."""
    with _open_store() as ls:
        stats = ls.blobs.stats()
        keys = ls.blobs.list_keys()
    if _get_json_output():
        _echo_json({
            "count": stats.count,
            "total_bytes": stats.total_bytes,
            "available_estimate": stats.available_estimate,
            "keys": keys,
        })
        return
    typer.echo(f"{stats.count} blobs, {stats.total_bytes / 1024:.1f}KB "
               f"({stats.available_estimate / 1024:.1f}KB available)")
    for key in keys:
        typer.echo(f"  {key}")


@blob_app.command("sweep")
def blob_sweep(
    max_age_days: Annotated[Optional[float], typer.Option(
        "--max-age-days", help="Also remove blobs older than this many days",
    )] = None,
):
    """Remove corrupt blob records (and optionally old ones)."""
    with _open_store() as ls:
        if max_age_days is None:
            removed = ls.blobs.sweep_corrupt()
            freed = 0
        else:
            report = ls.blobs.cleanup_older_than(timedelta(days=max_age_days))
            removed = len(report.removed)
            freed = report.bytes_freed
    if _get_json_output():
        _echo_json({"removed": removed, "bytes_freed": freed})
    else:
        typer.echo(f"Removed {removed} blob record(s), freed {freed / 1024:.1f}KB")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="lifesync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
