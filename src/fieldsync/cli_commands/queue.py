"""Queue management CLI commands: add captured files, reset failed assets."""

import json
import mimetypes
from pathlib import Path

import typer

from fieldsync.sync.store import AssetStore


def _output(data: dict, as_json: bool, human_message: str) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        typer.echo(human_message)


def add_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    mime_type: str = typer.Option(None, "--mime-type", "-m", help="MIME type (default: guessed)"),
    latitude: float = typer.Option(None, "--lat", help="Capture latitude"),
    longitude: float = typer.Option(None, "--lon", help="Capture longitude"),
    category: str = typer.Option("Site", "--category", help="Photo category"),
    reference: bool = typer.Option(
        False,
        "--reference",
        help="Store a reference to the file instead of copying its bytes",
    ),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Persist a captured file as a pending asset."""
    settings = ctx.obj
    guessed = mime_type or mimetypes.guess_type(file.name)[0] or "application/octet-stream"

    store = AssetStore(settings.database_path)
    try:
        if reference:
            asset_id = store.insert_asset(
                file.name,
                guessed,
                uri=str(file.resolve()),
                latitude=latitude,
                longitude=longitude,
                category=category,
            )
        else:
            asset_id = store.insert_asset(
                file.name,
                guessed,
                data=file.read_bytes(),
                latitude=latitude,
                longitude=longitude,
                category=category,
            )
        asset = store.get_asset(asset_id)
    finally:
        store.close()

    _output(
        {"status": "queued", "asset_id": asset_id, "client_key": asset.client_key if asset else None},
        output_json,
        f"Queued {file.name} as asset {asset_id}. Run 'fieldsync sync' to upload.",
    )


def retry_command(
    ctx: typer.Context,
    asset_id: int = typer.Argument(None, help="Asset to reset"),
    all_failed: bool = typer.Option(False, "--all-failed", help="Reset every failed asset"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output in JSON format"),
) -> None:
    """Reset failed assets to pending with a fresh retry budget."""
    if asset_id is None and not all_failed:
        typer.echo("Give an ASSET_ID or --all-failed.", err=True)
        raise typer.Exit(2)

    store = AssetStore(ctx.obj.database_path)
    try:
        if all_failed:
            count = store.reset_failed_assets()
            _output(
                {"status": "reset", "count": count},
                output_json,
                f"Reset {count} failed assets.",
            )
            return

        if not store.reset_asset(asset_id):
            _output(
                {"status": "error", "message": "Asset not found, uploading or already uploaded", "asset_id": asset_id},
                output_json,
                f"Asset {asset_id} not found, uploading or already uploaded.",
            )
            raise typer.Exit(1)
        _output(
            {"status": "reset", "asset_id": asset_id},
            output_json,
            f"Asset {asset_id} reset to pending.",
        )
    finally:
        store.close()
