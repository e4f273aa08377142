"""CLI command modules for intelstore.

Each module contains related command handlers used by __main__.py.
"""

from intelstore.cli.commands.doctor import cmd_doctor, cmd_stats
from intelstore.cli.commands.hook import HOOK_HANDLERS, cmd_hook
from intelstore.cli.commands.sync import cmd_export, cmd_import, cmd_status

__all__ = [
    "cmd_doctor",
    "cmd_export",
    "cmd_hook",
    "cmd_import",
    "cmd_stats",
    "cmd_status",
    "HOOK_HANDLERS",
]
