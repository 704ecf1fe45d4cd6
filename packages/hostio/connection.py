"""
Host Connection - the engine's only path to a target host

Contract:
    run_command(cmd, timeout) -> CommandResult(stdout, stderr, exit_code, timed_out)
    write_file(path, content, mode, owner, group)
    close()

Implementations:
- LocalConnection: /bin/sh on this machine (tests, --local runs)
- SSHConnection: OpenSSH client in BatchMode, commands wrapped in sudo -n

A command that exceeds its timeout returns timed_out=True (exit code 124)
rather than raising, so the executor can classify it per failure_policy.
An unreachable host raises ConnectionLost.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable
import logging
import shlex
import shutil
import subprocess

from directives.errors import CommitFailed, ConnectionLost

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SSH_ERROR_EXIT_CODE = 255


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one external command."""
    command: str
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out
        }


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


@runtime_checkable
class HostConnection(Protocol):
    """Protocol every connection provider satisfies."""

    name: str

    def run_command(self, cmd: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a shell command on the host."""

    def write_file(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None
    ) -> None:
        """Write content to path on the host."""

    def close(self) -> None:
        """Release the connection."""


class _ConnectionBase:
    name = "host"

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class LocalConnection(_ConnectionBase):
    """Runs commands through the local shell."""

    def __init__(self, default_timeout: float = 300.0, shell: str = "/bin/sh"):
        """
        Initialize local connection.

        Args:
            default_timeout: Timeout applied when a call passes none
            shell: Shell used to interpret commands
        """
        self.name = "localhost"
        self.default_timeout = default_timeout
        self.shell = shell

    def run_command(self, cmd: str, timeout: Optional[float] = None) -> CommandResult:
        timeout = timeout or self.default_timeout
        logger.debug(f"[{self.name}] $ {cmd}")

        try:
            result = subprocess.run(
                cmd,
                shell=True,
                executable=self.shell,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[{self.name}] command timed out after {timeout}s: {cmd}")
            return CommandResult(
                command=cmd,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) or f"Timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True
            )
        except OSError as e:
            raise ConnectionLost(f"Cannot start local shell {self.shell}: {e}")

        return CommandResult(
            command=cmd,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode
        )

    def write_file(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None
    ) -> None:
        target = Path(path)
        logger.debug(f"[{self.name}] write {path} ({len(content)} bytes)")
        try:
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            if mode is not None:
                target.chmod(mode)
            if owner or group:
                shutil.chown(target, user=owner, group=group)
        except (OSError, LookupError) as e:
            raise CommitFailed(f"Failed to write {path}: {e}")


class SSHConnection(_ConnectionBase):
    """
    Runs commands on a remote host through the OpenSSH client.

    BatchMode is always on: the engine must never hang on a password
    prompt. Commands run under `sudo -n` unless sudo=False.

    Limitation: the ssh client reports its own errors as exit status 255
    and passes the remote status through otherwise, so the two cannot be
    told apart. Every 255 is treated as a lost connection; a remote
    command that itself exits 255 aborts the run with ConnectionLost.
    Wrap such commands (`cmd || exit 1`) in the target.
    """

    def __init__(
        self,
        host: str,
        user: str = "root",
        port: int = 22,
        connect_timeout: int = 10,
        default_timeout: float = 300.0,
        proxy_jump: Optional[str] = None,
        identity_file: Optional[str] = None,
        sudo: bool = True
    ):
        self.host = host
        self.name = host
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self.proxy_jump = proxy_jump
        self.identity_file = identity_file
        self.sudo = sudo

    def base(self) -> List[str]:
        cmd = [
            "ssh",
            "-p",
            str(self.port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.identity_file:
            cmd += ["-i", self.identity_file]
        if self.proxy_jump:
            cmd += ["-J", self.proxy_jump]
        return cmd

    def _remote(self, cmd: str) -> str:
        if self.sudo:
            return f"sudo -n sh -c {shlex.quote(cmd)}"
        return f"sh -c {shlex.quote(cmd)}"

    def run_command(
        self,
        cmd: str,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None
    ) -> CommandResult:
        timeout = timeout or self.default_timeout
        full = self.base() + [f"{self.user}@{self.host}", self._remote(cmd)]
        logger.debug(f"[{self.host}] $ {cmd}")

        try:
            cp = subprocess.run(
                full,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[{self.host}] command timed out after {timeout}s: {cmd}")
            return CommandResult(
                command=cmd,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) or f"Timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True
            )
        except OSError as e:
            raise ConnectionLost(f"Cannot start ssh client: {e}")

        if cp.returncode == SSH_ERROR_EXIT_CODE:
            raise ConnectionLost(
                f"Lost connection to {self.user}@{self.host}:{self.port}: {(cp.stderr or '').strip()}"
            )

        return CommandResult(
            command=cmd,
            stdout=cp.stdout or "",
            stderr=cp.stderr or "",
            exit_code=cp.returncode
        )

    def write_file(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None
    ) -> None:
        quoted = shlex.quote(path)
        steps = [f"cat > {quoted}"]
        if mode is not None:
            steps.append(f"chmod {mode:o} {quoted}")
        if owner or group:
            steps.append(f"chown {owner or ''}{':' + group if group else ''} {quoted}")

        result = self.run_command(" && ".join(steps), input_text=content)
        if not result.ok:
            raise CommitFailed(f"Failed to write {path} on {self.host}: {result.stderr.strip()}")
