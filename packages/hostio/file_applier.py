"""
File Applier - File reads and atomic writes on the target host

Handles:
- READ: current content (None when the file does not exist)
- STAT: mode/owner/group
- WRITE: temp sibling + rename (atomic on POSIX), optional backup
- ATTRIBUTES: chmod/chown only when they differ
- DELETE / MKDIR

Safety:
- Temp files live next to the target so the rename never crosses filesystems
- Permissions of an existing file are preserved unless a mode is given
- Backups are timestamped copies (cp -p) taken right before the rename
- Dry-run mode reports what would change without touching the host
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging
import posixpath
import shlex
import uuid

from directives.errors import CommitFailed

logger = logging.getLogger(__name__)

MISSING_EXIT_CODE = 66


def parse_mode(mode) -> Optional[int]:
    """'0644' / '644' / 0o644 -> 0o644."""
    if mode is None or mode == "":
        return None
    if isinstance(mode, int):
        return mode
    return int(str(mode), 8)


@dataclass(frozen=True)
class FileAttributes:
    mode: int
    owner: str
    group: str


@dataclass(frozen=True)
class WriteResult:
    path: str
    changed: bool
    backup_path: Optional[str] = None


class FileApplier:
    """Applies file state to a host through its connection."""

    def __init__(self, connection, dry_run: bool = False, timeout: Optional[float] = None):
        """
        Initialize file applier.

        Args:
            connection: HostConnection
            dry_run: If True, simulate without actual changes
            timeout: Per-command timeout
        """
        self.connection = connection
        self.dry_run = dry_run
        self.timeout = timeout

    def _run(self, cmd: str):
        return self.connection.run_command(cmd, timeout=self.timeout)

    def _run_checked(self, cmd: str, what: str):
        result = self._run(cmd)
        if not result.ok:
            raise CommitFailed(f"{what} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    # ==================== Queries ====================

    def exists(self, path: str) -> bool:
        return self._run(f"test -e {shlex.quote(path)}").exit_code == 0

    def is_dir(self, path: str) -> bool:
        return self._run(f"test -d {shlex.quote(path)}").exit_code == 0

    def read(self, path: str) -> Optional[str]:
        """Return current file content, or None if the file does not exist."""
        quoted = shlex.quote(path)
        result = self._run(f"[ -e {quoted} ] || exit {MISSING_EXIT_CODE}; cat -- {quoted}")
        if result.exit_code == MISSING_EXIT_CODE:
            return None
        if not result.ok:
            raise CommitFailed(f"Cannot read {path}: {result.stderr.strip()}")
        return result.stdout

    def stat(self, path: str) -> Optional[FileAttributes]:
        result = self._run(f"stat -c '%a %U %G' -- {shlex.quote(path)}")
        if not result.ok:
            return None
        parts = result.stdout.split()
        if len(parts) != 3:
            return None
        return FileAttributes(mode=int(parts[0], 8), owner=parts[1], group=parts[2])

    # ==================== Mutations ====================

    def temp_sibling(self, path: str, purpose: str = "tmp") -> str:
        directory, name = posixpath.split(path)
        return posixpath.join(directory, f".{name}.converge-{purpose}-{uuid.uuid4().hex[:8]}")

    def make_dirs(self, path: str) -> bool:
        """mkdir -p; returns True when the directory had to be created."""
        if self.is_dir(path):
            return False
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create directory: {path}")
            return True
        self._run_checked(f"mkdir -p -- {shlex.quote(path)}", f"mkdir {path}")
        return True

    def ensure_attributes(
        self,
        path: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None
    ) -> bool:
        """
        Converge mode/owner/group of an existing path.

        Returns:
            True if anything changed (or would change in dry-run)

        Raises:
            CommitFailed: If the path does not exist or chmod/chown fails
        """
        current = self.stat(path)
        if current is None:
            raise CommitFailed(f"Path does not exist: {path}")

        quoted = shlex.quote(path)
        commands = []
        if mode is not None and current.mode != mode:
            commands.append(f"chmod {mode:o} {quoted}")
        if (owner and current.owner != owner) or (group and current.group != group):
            commands.append(f"chown {owner or current.owner}:{group or current.group} {quoted}")

        if not commands:
            return False
        if self.dry_run:
            logger.info(f"[DRY RUN] Would change attributes of {path}")
            return True

        self._run_checked(" && ".join(commands), f"chmod/chown {path}")
        return True

    def backup(self, path: str) -> str:
        """Copy the live file to a timestamped backup next to it."""
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
        backup_path = f"{path}.{stamp}.{uuid.uuid4().hex[:4]}.bak"
        self._run_checked(
            f"cp -p -- {shlex.quote(path)} {shlex.quote(backup_path)}",
            f"backup of {path}"
        )
        logger.info(f"Backed up {path} -> {backup_path}")
        return backup_path

    def stage(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        purpose: str = "tmp"
    ) -> str:
        """
        Write content to a hidden sibling of path and return its location.

        The live path is not touched. Existing permissions are inherited
        when no mode is given.
        """
        directory = posixpath.dirname(path) or "."
        self._run_checked(f"mkdir -p -- {shlex.quote(directory)}", f"mkdir {directory}")

        if mode is None or owner is None or group is None:
            current = self.stat(path)
            if current is not None:
                mode = current.mode if mode is None else mode
                owner = owner or current.owner
                group = group or current.group

        staged = self.temp_sibling(path, purpose)
        try:
            self.connection.write_file(staged, content, mode=mode, owner=owner, group=group)
        except CommitFailed:
            # write_file may fail after creating the file (chmod/chown)
            self.discard(staged)
            raise
        return staged

    def promote(self, staged_path: str, path: str, backup: bool = False) -> Optional[str]:
        """
        Atomically replace path with staged_path (rename).

        Returns:
            Backup path if one was taken
        """
        backup_path = None
        if backup and self.exists(path):
            backup_path = self.backup(path)

        result = self._run(f"mv -f -- {shlex.quote(staged_path)} {shlex.quote(path)}")
        if not result.ok:
            self.discard(staged_path)
            raise CommitFailed(f"Failed to move staged file onto {path}: {result.stderr.strip()}")
        return backup_path

    def discard(self, staged_path: str):
        self._run(f"rm -f -- {shlex.quote(staged_path)}")

    def write_atomic(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        backup: bool = False
    ) -> WriteResult:
        """
        Write-then-rename. Skips the write when content already matches.

        Returns:
            WriteResult with changed flag and backup path
        """
        current = self.read(path)
        if current == content:
            changed = self.ensure_attributes(path, mode, owner, group)
            return WriteResult(path=path, changed=changed)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would write: {path}")
            return WriteResult(path=path, changed=True)

        staged = self.stage(path, content, mode, owner, group)
        backup_path = self.promote(staged, path, backup=backup and current is not None)
        return WriteResult(path=path, changed=True, backup_path=backup_path)

    def remove(self, path: str) -> bool:
        if not self.exists(path):
            return False
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete: {path}")
            return True
        self._run_checked(f"rm -rf -- {shlex.quote(path)}", f"delete {path}")
        return True
