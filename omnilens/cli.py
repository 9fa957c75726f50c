"""
CLI interface for the capture library.

Usage:
    omnilens capture ~/Pictures/receipt.jpg
    omnilens search "coffee" --tag finance
    omnilens reconcile
"""

import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import tomli_w
import typer
from typing_extensions import Annotated

from .app import Library, open_library
from .config import config_to_dict
from .errors import CaptureFailedError, NotFoundError, ValidationError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .orchestrator import DEFAULT_COLLECTION
from .types import Collection, Item, QueuedScan, SearchFilters, format_ms


# Configure quiet mode by default (suppress verbose library output)
# Set OMNILENS_VERBOSE=1 to enable debug mode via environment
if os.environ.get("OMNILENS_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"omnilens {version('omnilens')}")
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


app = typer.Typer(
    name="omnilens",
    help="Capture images and keep them searchable.",
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
        envvar="OMNILENS_STORE_PATH",
        help="Path to the store directory (default: ~/.omnilens/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Capture images and keep them searchable."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

CollectionOption = Annotated[
    Optional[str],
    typer.Option(
        "--collection", "-c",
        help="Collection id or name",
    )
]

UnassignedOption = Annotated[
    bool,
    typer.Option(
        "--unassigned", "-u",
        help="No collection",
    )
]

TagOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--tag", "-t",
        help="Tag (repeatable)",
    )
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

@contextmanager
def _library() -> Iterator[Library]:
    """Open the library for one command, mapping known errors to exit 1."""
    try:
        lib = open_library(_store_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    try:
        yield lib
    except (NotFoundError, ValidationError, CaptureFailedError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        lib.close()


def _resolve_collection(lib: Library, value: str) -> str:
    """Accept a collection id or an exact name."""
    if lib.store.get_collection(value) is not None:
        return value
    found = lib.store.find_collection_by_name(value)
    if found is None:
        raise NotFoundError(f"Collection not found: {value}")
    return found.id


def _collection_names(lib: Library) -> dict[str, str]:
    return {c.id: c.name for c in lib.store.list_collections()}


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _format_item(item: Item, names: dict[str, str]) -> str:
    """One summary line: id  status  date  title  [collection]"""
    line = f"{item.id}  {item.status:<10} {format_ms(item.created_at)}  {item.title}"
    if item.collection_id:
        line += f"  [{names.get(item.collection_id, item.collection_id)}]"
    return line


def _format_item_detail(item: Item, names: dict[str, str]) -> str:
    collection = names.get(item.collection_id, item.collection_id) if item.collection_id else "-"
    lines = [
        f"id: {item.id}",
        f"title: {item.title}",
        f"status: {item.status}",
        f"category: {item.category}",
        f"tags: {', '.join(item.tags) or '-'}",
        f"objects: {', '.join(item.identified_objects) or '-'}",
        f"collection: {collection}",
        f"image: {item.image_uri}",
        f"created: {format_ms(item.created_at)}",
        f"updated: {format_ms(item.updated_at)}",
    ]
    if item.notes:
        lines.append(f"notes: {item.notes}")
    if item.ocr_text:
        lines.append("ocr: |")
        lines.extend(f"  {text}" for text in item.ocr_text.splitlines())
    return "\n".join(lines)


def _output_items(lib: Library, items: list[Item]) -> None:
    if _get_json_output():
        _echo_json([i.to_dict() for i in items])
        return
    if not items:
        typer.echo("No items.", err=True)
        return
    names = _collection_names(lib)
    for item in items:
        typer.echo(_format_item(item, names))


def _format_collection(collection: Collection, default_id: str, count: int) -> str:
    marker = "*" if collection.id == default_id else " "
    line = f"{marker} {collection.id}  {collection.name}  ({count} items)"
    if collection.description:
        line += f"  {collection.description}"
    return line


def _format_scan(scan: QueuedScan) -> str:
    line = (
        f"{scan.id}  {scan.status:<10} item={scan.item_id or '-'}  "
        f"attempts={scan.attempts}  queued {format_ms(scan.created_at)}"
    )
    if scan.last_error:
        line += f"  last error: {scan.last_error}"
    return line


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def capture(
    paths: Annotated[list[str], typer.Argument(help="Image paths or file:// URIs")],
    collection: CollectionOption = None,
    unassigned: UnassignedOption = False,
):
    """Capture images and analyze them (queued if the service is unreachable)."""
    if collection and unassigned:
        typer.echo("Error: Specify either --collection or --unassigned, not both", err=True)
        raise typer.Exit(1)
    with _library() as lib:
        target = DEFAULT_COLLECTION
        if unassigned:
            target = None
        elif collection:
            target = _resolve_collection(lib, collection)

        captured = []
        failed = 0
        for path in paths:
            try:
                captured.append(lib.orchestrator.add_capture(path, collection_id=target))
            except CaptureFailedError as e:
                failed += 1
                typer.echo(f"Error: {e}", err=True)
        if captured:
            _output_items(lib, captured)
    if failed:
        raise typer.Exit(1)


@app.command("list")
def list_items(
    status: Annotated[Optional[str], typer.Option(
        "--status", help="Only items in this state (processing, queued, ready, failed)"
    )] = None,
):
    """List items, newest first."""
    with _library() as lib:
        items = lib.store.list_items()
        if status:
            items = [i for i in items if i.status == status.lower()]
        _output_items(lib, items)


@app.command()
def search(
    query: Annotated[Optional[str], typer.Argument(help="Text in title, notes or OCR")] = None,
    tag: TagOption = None,
    category: Annotated[Optional[str], typer.Option(
        "--category", help="Exact category"
    )] = None,
    collection: CollectionOption = None,
    unassigned: UnassignedOption = False,
):
    """Search items by text, tags, category and collection."""
    with _library() as lib:
        filters = SearchFilters(
            category=category,
            collection_id=_resolve_collection(lib, collection) if collection else None,
            tags=list(tag or []),
            unassigned=unassigned,
        )
        _output_items(lib, lib.orchestrator.run_search(query or "", filters))


@app.command()
def show(
    id: Annotated[str, typer.Argument(help="Item id")],
):
    """Show one item in full."""
    with _library() as lib:
        item = lib.store.require_item(id)
        if _get_json_output():
            _echo_json(item.to_dict())
        else:
            typer.echo(_format_item_detail(item, _collection_names(lib)))


@app.command()
def edit(
    id: Annotated[str, typer.Argument(help="Item id")],
    title: Annotated[Optional[str], typer.Option("--title", help="New title")] = None,
    notes: Annotated[Optional[str], typer.Option("--notes", help="New notes")] = None,
    category: Annotated[Optional[str], typer.Option("--category", help="New category")] = None,
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t", help="Replace tags (repeatable)"
    )] = None,
    collection: CollectionOption = None,
    unassigned: UnassignedOption = False,
):
    """Edit an item's metadata. The item's status is not changed."""
    if collection and unassigned:
        typer.echo("Error: Specify either --collection or --unassigned, not both", err=True)
        raise typer.Exit(1)
    with _library() as lib:
        changes = {}
        if title is not None:
            changes["title"] = title
        if notes is not None:
            changes["notes"] = notes
        if category is not None:
            changes["category"] = category
        if tag is not None:
            changes["tags"] = list(tag)
        if unassigned:
            changes["collection_id"] = None
        elif collection:
            changes["collection_id"] = _resolve_collection(lib, collection)
        if not changes:
            typer.echo("Error: Nothing to change", err=True)
            raise typer.Exit(1)
        item = lib.orchestrator.edit_item(id, **changes)
        if _get_json_output():
            _echo_json(item.to_dict())
        else:
            typer.echo(_format_item(item, _collection_names(lib)))


@app.command("rm")
def remove(
    id: Annotated[str, typer.Argument(help="Item id")],
):
    """Delete an item (and its queued scan, if any)."""
    with _library() as lib:
        if not lib.orchestrator.remove_item(id):
            raise NotFoundError(f"Item not found: {id}")
        typer.echo(f"Removed {id}")


@app.command()
def collections():
    """List collections (* marks the default)."""
    with _library() as lib:
        cols = lib.store.list_collections()
        counts: dict[Optional[str], int] = {}
        for item in lib.store.list_items():
            counts[item.collection_id] = counts.get(item.collection_id, 0) + 1
        if _get_json_output():
            _echo_json([
                {**c.to_dict(), "items": counts.get(c.id, 0),
                 "default": c.id == lib.orchestrator.default_collection_id}
                for c in cols
            ])
            return
        for c in cols:
            typer.echo(_format_collection(c, lib.orchestrator.default_collection_id, counts.get(c.id, 0)))
        if counts.get(None):
            typer.echo(f"  (unassigned: {counts[None]} items)")


@app.command("collection-add")
def collection_add(
    name: Annotated[str, typer.Argument(help="Collection name")],
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d", help="Description"
    )] = None,
):
    """Create a collection."""
    with _library() as lib:
        created = lib.orchestrator.add_collection(name, description)
        if _get_json_output():
            _echo_json(created.to_dict())
        else:
            typer.echo(f"Created {created.id}  {created.name}")


@app.command("collection-edit")
def collection_edit(
    id: Annotated[str, typer.Argument(help="Collection id or name")],
    name: Annotated[Optional[str], typer.Option("--name", help="New name")] = None,
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d", help="New description"
    )] = None,
):
    """Rename or re-describe a collection."""
    with _library() as lib:
        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if not changes:
            typer.echo("Error: Nothing to change", err=True)
            raise typer.Exit(1)
        updated = lib.orchestrator.edit_collection(_resolve_collection(lib, id), **changes)
        if _get_json_output():
            _echo_json(updated.to_dict())
        else:
            typer.echo(f"Updated {updated.id}  {updated.name}")


@app.command("collection-rm")
def collection_rm(
    id: Annotated[str, typer.Argument(help="Collection id or name")],
):
    """Delete a collection. Its items are kept, unassigned."""
    with _library() as lib:
        collection_id = _resolve_collection(lib, id)
        unassigned = lib.orchestrator.remove_collection(collection_id)
        typer.echo(f"Removed {collection_id} ({unassigned} items unassigned)")


@app.command()
def queue():
    """Show scans waiting for analysis."""
    with _library() as lib:
        scans = lib.queue.list_all()
        if _get_json_output():
            _echo_json([s.to_dict() for s in scans])
            return
        if not scans:
            typer.echo("Queue is empty.", err=True)
            return
        for scan in scans:
            typer.echo(_format_scan(scan))


@app.command()
def reconcile():
    """Retry analysis for every queued scan once."""
    with _library() as lib:
        report = lib.orchestrator.reconcile()
        if _get_json_output():
            _echo_json(report.to_dict())
            return
        if report.skipped:
            typer.echo("Reconciliation already in progress.")
            return
        typer.echo(
            f"ready: {report.ready}  retried: {report.retried}  "
            f"failed: {report.failed}  dropped: {report.dropped}"
        )
        for error in report.errors:
            typer.echo(f"  {error}", err=True)


@app.command()
def watch(
    interval: Annotated[Optional[float], typer.Option(
        "--interval", "-i", help="Seconds between passes (default: from config)"
    )] = None,
    duration: Annotated[float, typer.Option(
        "--duration", help="Stop after this many seconds (0 = until interrupted)"
    )] = 0,
):
    """Reconcile the queue periodically until interrupted."""
    with _library() as lib:
        if interval is not None:
            if interval <= 0:
                typer.echo("Error: --interval must be positive", err=True)
                raise typer.Exit(1)
            lib.config.reconcile.interval = interval
        scheduler = lib.scheduler
        scheduler.start()
        typer.echo(
            f"Watching queue every {lib.config.reconcile.interval:g}s (Ctrl+C to stop)",
            err=True,
        )
        deadline = time.monotonic() + duration if duration > 0 else None
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
        report = scheduler.last_report
        if report is not None and not report.skipped:
            typer.echo(f"Last pass: {report.ready} ready, {report.retried} retried", err=True)


@app.command()
def status():
    """Show store location, mode and item counts."""
    with _library() as lib:
        counts = lib.store.status_counts()
        stats = lib.queue.stats()
        info = {
            "store": str(lib.path),
            "mode": lib.orchestrator.mode,
            "endpoint": lib.config.analysis.endpoint,
            "items": sum(counts.values()),
            "by_status": counts,
            "collections": len(lib.store.list_collections()),
            "queue": {
                "pending": stats["pending"],
                "processing": stats["processing"],
                "max_attempts": stats["max_attempts"],
            },
        }
        if _get_json_output():
            _echo_json(info)
            return
        typer.echo(f"store: {info['store']}")
        typer.echo(f"mode: {info['mode']}")
        if info["mode"] == "live":
            typer.echo(f"endpoint: {info['endpoint']}")
        typer.echo(f"items: {info['items']} ({', '.join(f'{k} {v}' for k, v in counts.items())})")
        typer.echo(f"collections: {info['collections']}")
        typer.echo(f"queue: {stats['pending']} pending, {stats['processing']} processing")


@app.command("config")
def show_config():
    """Show the effective configuration."""
    with _library() as lib:
        data = config_to_dict(lib.config)
        if _get_json_output():
            _echo_json(data)
        else:
            typer.echo(f"# {lib.config.config_path}")
            typer.echo(tomli_w.dumps(data).rstrip())


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
        log_path = log_exception(e, context="omnilens CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
