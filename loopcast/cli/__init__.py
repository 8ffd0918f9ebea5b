"""Command-line routing for loopcast."""

from .commands import COMMANDS, CommandSpec, add_command_parsers, dispatch

__all__ = ["COMMANDS", "CommandSpec", "add_command_parsers", "dispatch"]
