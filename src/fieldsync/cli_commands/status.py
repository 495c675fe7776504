"""Status command for fieldsync CLI."""

import json

import typer

from fieldsync.sync.store import AssetStatus, AssetStore


def _get_queue_stats(ctx: typer.Context) -> dict:
    """Get asset counts by status from the local store."""
    db_path = ctx.obj.database_path
    if not db_path.exists():
        stats = {status.value: 0 for status in AssetStatus}
        stats["total"] = 0
        return stats

    store = AssetStore(db_path)
    try:
        return store.get_stats()
    finally:
        store.close()


def status_command(
    ctx: typer.Context,
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show upload queue status.

    Displays asset counts per status in the local store.
    """
    stats = _get_queue_stats(ctx)

    if output_json:
        typer.echo(json.dumps(stats))
        return

    typer.echo("")
    typer.echo("fieldsync Queue Status")
    typer.echo("----------------------")
    typer.echo(f"Pending:   {stats['pending']}")
    typer.echo(f"Uploading: {stats['uploading']}")
    typer.echo(f"Uploaded:  {stats['uploaded']}")
    if stats["failed"] > 0:
        typer.echo(f"Failed:    {stats['failed']} (retry with: fieldsync retry --all-failed)")
    else:
        typer.echo("Failed:    0")
    typer.echo(f"Total:     {stats['total']}")
    typer.echo("")
