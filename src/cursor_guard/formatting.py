"""Formatting utilities for consistent console output."""


def truncate_command(command: str, length: int = 40) -> str:
    """Shorten a command line for display, keeping the start.

    Returns the command unchanged if it fits, otherwise the first
    ``length - 2`` characters followed by "..".
    """
    if len(command) <= length:
        return command
    return command[: length - 2] + ".."


def format_percent(value: float) -> str:
    """Format a CPU/memory percentage for table views."""
    return f"{value:5.1f}%"


def format_bytes(size: float) -> str:
    """Format bytes as a human-readable string."""
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size = size / 1024
    return f"{size:.1f}P"
