"""
Command definitions and auto-completion for REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from typing import Any, List

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .core import DeviceClass


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


DEVICE_ARGUMENTS = [device_class.value for device_class in DeviceClass]

# Commands taking a device class argument
DEVICE_COMMANDS = ("connect", "c", "disconnect", "dc")

# Define all available commands
COMMANDS = [
    Command(
        name="connect",
        aliases=["c"],
        description="Connect to a bike or heart rate strap",
        usage="connect [bike|hr]",
        handler="cmd_connect",
    ),
    Command(
        name="disconnect",
        aliases=["dc"],
        description="Disconnect a device (ends an active session)",
        usage="disconnect [bike|hr]",
        handler="cmd_disconnect",
    ),
    Command(
        name="start",
        aliases=["s"],
        description="Start recording a session",
        usage="start",
        handler="cmd_start",
    ),
    Command(
        name="end",
        aliases=["e", "stop"],
        description="End and save the current session",
        usage="end",
        handler="cmd_end",
    ),
    Command(
        name="retry",
        aliases=["r"],
        description="Retry saving a session that failed to save",
        usage="retry",
        handler="cmd_retry",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Show devices and current sensor values",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="live",
        aliases=["l"],
        description="Toggle live display mode",
        usage="live",
        handler="cmd_live",
    ),
    Command(
        name="history",
        aliases=["hi"],
        description="Show past sessions with trends and percentiles",
        usage="history",
        handler="cmd_history",
    ),
    Command(
        name="info",
        aliases=["i"],
        description="Show device and debug information",
        usage="info",
        handler="cmd_info",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


class CommandCompleter(Completer):
    """Auto-completion for commands and arguments."""

    def __init__(self) -> None:
        """Initialize completer."""
        self._command_names = set()
        self._command_aliases = set()

        for cmd in COMMANDS:
            self._command_names.add(cmd.name)
            self._command_aliases.update(cmd.aliases)

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands/arguments
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text:
            return

        # Second part: suggest device classes after connect/disconnect
        if len(parts) >= 2 or (parts and text.endswith(" ")):
            if parts[0].lower() not in DEVICE_COMMANDS:
                return
            partial = parts[-1].lower() if len(parts) >= 2 and not text.endswith(" ") else ""
            for device in DEVICE_ARGUMENTS:
                if device.startswith(partial):
                    yield Completion(
                        device[len(partial) :],
                        start_position=0,
                        display=device,
                    )
            return

        # First part: complete command name
        partial_cmd = parts[0].lower()
        all_names = self._command_names | self._command_aliases

        for name in sorted(all_names):
            if name.startswith(partial_cmd):
                # Calculate completion (what needs to be added)
                completion = name[len(partial_cmd) :]
                yield Completion(
                    completion,
                    start_position=0,
                    display=f"({name})",
                )
