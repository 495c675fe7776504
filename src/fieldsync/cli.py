"""fieldsync CLI - Command-line interface for the upload client."""

from pathlib import Path

import typer

from fieldsync import __version__
from fieldsync.cli_commands.queue import add_command, retry_command
from fieldsync.cli_commands.status import status_command
from fieldsync.cli_commands.sync import run_command, sync_command
from fieldsync.config import load_settings

app = typer.Typer(
    name="fieldsync",
    help="fieldsync - durable upload queue for captured media.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"fieldsync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML config file (default: environment / .env).",
    ),
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """fieldsync - durable upload queue for captured media."""
    try:
        ctx.obj = load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(2)


app.command(name="add")(add_command)
app.command(name="retry")(retry_command)
app.command(name="status")(status_command)
app.command(name="sync")(sync_command)
app.command(name="run")(run_command)


if __name__ == "__main__":
    app()
