"""
Host I/O Package

The engine's only path to a target host: commands and file state.

Components:
- connection: CommandResult, HostConnection protocol, LocalConnection, SSHConnection
- file_applier: reads, stats, atomic write-then-rename with backups
"""

from .connection import (
    CommandResult,
    HostConnection,
    LocalConnection,
    SSHConnection,
    TIMEOUT_EXIT_CODE
)

from .file_applier import (
    FileApplier,
    FileAttributes,
    WriteResult,
    parse_mode
)

__all__ = [
    "CommandResult",
    "HostConnection",
    "LocalConnection",
    "SSHConnection",
    "TIMEOUT_EXIT_CODE",
    "FileApplier",
    "FileAttributes",
    "WriteResult",
    "parse_mode"
]
