"""CLI command modules for fieldsync."""

from fieldsync.cli_commands.queue import add_command, retry_command
from fieldsync.cli_commands.status import status_command
from fieldsync.cli_commands.sync import run_command, sync_command

__all__ = ["add_command", "retry_command", "run_command", "status_command", "sync_command"]
