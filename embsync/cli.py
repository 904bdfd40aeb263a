"""
CLI interface for the embedding index.

Usage:
    embsync status
    embsync check 42
    embsync sync 42 43 --prune
"""

import json
import os
import signal
import threading
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import IndexEngine
from .config import get_store_path, load_or_create_config
from .errors import ErrorContext, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode


# Configure quiet mode by default (suppress verbose library output)
# Set EMBSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("EMBSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"embsync {version('embsync')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None
_source_override: Optional[Path] = None
_error_context = ErrorContext()


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value
    _error_context.store_path = value


def _source_callback(value: Optional[Path]):
    global _source_override
    _source_override = value


app = typer.Typer(
    name="embsync",
    help="Incremental embedding index for a record store.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
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
        envvar="EMBSYNC_STORE_PATH",
        help="Path to the index directory (default: ~/.embsync/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
    source: Annotated[Optional[Path], typer.Option(
        "--source",
        envvar="EMBSYNC_SOURCE_PATH",
        help="Path to the source records database",
        callback=_source_callback,
        is_eager=True,
    )] = None,
):
    """Incremental embedding index for a record store."""
    _error_context.command = ctx.invoked_subcommand


PartitionArg = Annotated[int, typer.Argument(help="Partition ID")]


def _get_engine(*partition_ids: int) -> IndexEngine:
    """Open the index, handling errors gracefully.

    Partitions passed here are named in the error log if the command fails.
    """
    import atexit

    _error_context.partition_ids = list(partition_ids)
    try:
        config = load_or_create_config(get_store_path(_store_override))
        if _source_override is not None:
            config.source_path = _source_override.expanduser()
        engine = IndexEngine(config=config)
        atexit.register(engine.close)
        return engine
    except (ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2))


@app.command()
def status():
    """Show embedding and failure counts per indexed partition."""
    engine = _get_engine()
    partitions = []
    for partition_id in engine.indexed_partitions():
        state = engine.scan_state(partition_id)
        partitions.append({
            "partition_id": partition_id,
            "embeddings": engine.stats(partition_id)["embedding_count"],
            "last_scan": state.last_scan_timestamp if state else None,
            **engine.failed_stats(partition_id),
        })
    totals = {**engine.stats(), **engine.failed_stats()}

    if _get_json_output():
        _echo_json({"store": str(engine.config.path), **totals, "partitions": partitions})
        return

    typer.echo(f"Store: {engine.config.path}")
    typer.echo(f"Model: {totals['model_id']} ({totals['dimensions']} dims)")
    typer.echo(
        f"Embeddings: {totals['embedding_count']}  "
        f"Failed: {totals['total_failed']} "
        f"({totals['ready_for_retry']} ready, {totals['permanently_failed']} permanent)"
    )
    for p in partitions:
        typer.echo(
            f"  {p['partition_id']}: {p['embeddings']} embeddings, "
            f"{p['total_failed']} failed, last scan {p['last_scan'] or 'never'}"
        )


@app.command()
def check(partition: PartitionArg):
    """Run the cheap change check for a partition."""
    engine = _get_engine(partition)
    result = engine.should_run_full_diff(partition)
    if _get_json_output():
        _echo_json({"partition_id": partition, "needs_diff": result.needs_diff, "reason": result.reason})
    else:
        verdict = "full diff needed" if result.needs_diff else "up to date"
        typer.echo(f"{partition}: {verdict} ({result.reason})")


@app.command()
def diff(
    partition: PartitionArg,
    show_ids: Annotated[bool, typer.Option(
        "--ids",
        help="List the record IDs to index and delete",
    )] = False,
):
    """Compute the full diff for a partition without changing anything."""
    engine = _get_engine(partition)
    result = engine.compute_full_diff(partition)
    if _get_json_output():
        _echo_json({
            "partition_id": partition,
            "total_eligible": result.total_eligible,
            "skipped": result.skipped,
            "to_index": result.to_index,
            "to_delete": result.to_delete,
        })
        return

    typer.echo(
        f"{partition}: {len(result.to_index)} to index, {len(result.to_delete)} to delete "
        f"({result.total_eligible} eligible, {result.skipped} malformed)"
    )
    if show_ids:
        typer.echo(f"  index: {' '.join(str(i) for i in result.to_index)}")
        typer.echo(f"  delete: {' '.join(str(i) for i in result.to_delete)}")


@app.command()
def sync(
    partitions: Annotated[Optional[list[int]], typer.Argument(
        help="Partitions to sync (default: every partition in the source)",
    )] = None,
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Run a full diff even if nothing changed",
    )] = False,
    prune: Annotated[bool, typer.Option(
        "--prune",
        help="Remove index data for partitions not being synced",
    )] = False,
):
    """
    Bring the index up to date.

    Ctrl-C stops after the current batch; finished batches are kept.
    """
    engine = _get_engine()
    partition_ids = list(partitions) if partitions else engine.source_partitions()
    _error_context.partition_ids = partition_ids
    if not partition_ids:
        typer.echo("No partitions to sync.", err=True)
        return

    cancel = threading.Event()

    def _on_interrupt(signum, frame):
        typer.echo("Stopping after current batch...", err=True)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_interrupt)

    def _on_progress(partition_id: int, done: int, total: int) -> None:
        if not _get_json_output():
            typer.echo(f"  {partition_id}: {done}/{total}", err=True)

    try:
        results = engine.sync_all(
            partition_ids, prune=prune, force=force, on_progress=_on_progress, cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if _get_json_output():
        _echo_json([{
            "partition_id": r.partition_id,
            "diff_ran": r.diff_ran,
            "reason": r.reason,
            "to_index": r.to_index,
            "indexed": r.indexing.indexed,
            "skipped": r.indexing.skipped,
            "failed": r.indexing.failed,
            "deleted": r.deleted,
            "deferred": r.deferred,
            "cancelled": r.indexing.cancelled,
        } for r in results])
    else:
        for r in results:
            typer.echo(
                f"{r.partition_id}: {r.reason}; indexed {r.indexing.indexed}, "
                f"skipped {r.indexing.skipped}, failed {r.indexing.failed}, "
                f"deleted {r.deleted}, deferred {r.deferred}"
            )
        if cancel.is_set():
            typer.echo("Cancelled.", err=True)

    if cancel.is_set():
        raise typer.Exit(130)


@app.command()
def failures(
    partition: Annotated[Optional[int], typer.Option(
        "--partition", "-p",
        help="Only this partition",
    )] = None,
    permanent: Annotated[bool, typer.Option(
        "--permanent",
        help="Only records that hit the failure ceiling",
    )] = False,
):
    """List records that failed to embed."""
    engine = _get_engine(*([partition] if partition is not None else []))
    rows = engine.list_failures(partition)
    if permanent:
        ceiling = engine.failure_tracker.max_failure_count
        rows = [f for f in rows if f.failure_count >= ceiling]

    if _get_json_output():
        _echo_json([{
            "record_id": f.record_id,
            "partition_id": f.partition_id,
            "failure_count": f.failure_count,
            "last_error": f.last_error,
            "next_retry_after": f.next_retry_after,
        } for f in rows])
        return

    if not rows:
        typer.echo("No failed records.")
        return
    for f in rows:
        typer.echo(
            f"{f.record_id} (partition {f.partition_id}): {f.failure_count} failures, "
            f"retry after {f.next_retry_after}: {f.last_error}"
        )


@app.command("clear-failures")
def clear_failures(
    partitions: Annotated[list[int], typer.Argument(help="Partitions to reset")],
):
    """Reset backoff so failed records are retried on the next sync."""
    engine = _get_engine(*partitions)
    removed = engine.clear_failures(partitions)
    if _get_json_output():
        _echo_json({"cleared": removed})
    else:
        typer.echo(f"Cleared {removed} failure records")


@app.command()
def cleanup(partition: PartitionArg):
    """Remove orphaned embeddings and stale failure records for a partition."""
    engine = _get_engine(partition)
    embeddings = engine.cleanup_orphaned_embeddings(partition)
    stale = engine.cleanup_stale_failure_records(partition)
    if _get_json_output():
        _echo_json({"embeddings_removed": embeddings, "failures_removed": stale})
    else:
        typer.echo(f"Removed {embeddings} orphaned embeddings, {stale} stale failure records")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, _error_context)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
