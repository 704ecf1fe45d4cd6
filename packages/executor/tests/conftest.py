"""
Pytest configuration for executor tests.

Provides a scripted in-memory FakeConnection for action and run tests
that must not touch the machine running the tests (systemctl, apt-get,
useradd, unreachable hosts), plus small builders for directives.
"""

import re
from typing import Callable, List, Optional, Tuple, Union

import pytest

from directives import Directive, Handler, RunContext
from directives.errors import ConnectionLost
from hostio import CommandResult, LocalConnection


Response = Union[CommandResult, Callable[[str], CommandResult], Exception]


class FakeConnection:
    """
    Scripted HostConnection.

    Responses are matched in registration order by regex search over the
    command; unmatched commands succeed with empty output.
    """

    def __init__(self, name: str = "fake-host"):
        self.name = name
        self.commands: List[str] = []
        self.written: List[Tuple[str, str]] = []
        self.closed = False
        self._responses: List[Tuple["re.Pattern[str]", Response]] = []

    def on(
        self,
        pattern: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        timed_out: bool = False,
        raises: Optional[Exception] = None,
        respond: Optional[Callable[[str], CommandResult]] = None
    ) -> "FakeConnection":
        if raises is not None:
            response: Response = raises
        elif respond is not None:
            response = respond
        else:
            response = CommandResult(
                command=pattern,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                timed_out=timed_out
            )
        self._responses.append((re.compile(pattern), response))
        return self

    def run_command(self, cmd: str, timeout: Optional[float] = None) -> CommandResult:
        self.commands.append(cmd)
        for pattern, response in self._responses:
            if pattern.search(cmd):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(cmd)
                return CommandResult(
                    command=cmd,
                    stdout=response.stdout,
                    stderr=response.stderr,
                    exit_code=response.exit_code,
                    timed_out=response.timed_out
                )
        return CommandResult(command=cmd, stdout="", stderr="", exit_code=0)

    def write_file(self, path, content, mode=None, owner=None, group=None) -> None:
        self.written.append((path, content))

    def close(self) -> None:
        self.closed = True

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, cmd) for cmd in self.commands)

    def count(self, pattern: str) -> int:
        return sum(1 for cmd in self.commands if re.search(pattern, cmd))


@pytest.fixture
def fake():
    return FakeConnection()


@pytest.fixture
def local():
    """Real shell on this machine, confined to tmp_path by the tests."""
    return LocalConnection(default_timeout=30.0)


@pytest.fixture
def context():
    return RunContext.resolve({"admin_user": "deploy", "ssh_port": 2222})


@pytest.fixture
def lost_connection():
    return ConnectionLost("ssh: connect to host fake-host port 22: Connection refused")


@pytest.fixture
def make_directive():
    """Directive from YAML-style keyword fields: make_directive("x", command="true")."""
    def build(id: str, **fields) -> Directive:
        return Directive.model_validate({"id": id, **fields})
    return build


@pytest.fixture
def make_handler():
    def build(name: str, **fields) -> Handler:
        return Handler.model_validate({"name": name, **fields})
    return build


@pytest.fixture
def connection_class():
    """FakeConnection itself, for tests that need one connection per host."""
    return FakeConnection
