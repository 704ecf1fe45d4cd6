"""
Tests for Host Connections

Validates:
- LocalConnection captures output, exit codes and timeouts
- SSHConnection builds a BatchMode ssh invocation
- ssh exit 255 is a lost connection, not a command failure
"""

import subprocess

import pytest

from directives.errors import ConnectionLost
from hostio import TIMEOUT_EXIT_CODE, LocalConnection, SSHConnection


@pytest.fixture
def local():
    return LocalConnection(default_timeout=10.0)


def test_local_captures_output(local):
    result = local.run_command("echo out; echo err >&2; exit 4")

    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 4
    assert result.ok is False


def test_local_timeout(local):
    result = local.run_command("sleep 5", timeout=0.3)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE


def test_local_write_file_with_mode(local, tmp_path):
    target = tmp_path / "motd"

    local.write_file(str(target), "hello\n", mode=0o600)

    assert target.read_text() == "hello\n"
    assert (target.stat().st_mode & 0o777) == 0o600


def test_local_context_manager_closes(local):
    with local as conn:
        assert conn.run_command("true").ok


# ==================== SSH ====================

class _Completed:
    def __init__(self, returncode, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def captured(monkeypatch):
    """Replace subprocess.run; returns the list of recorded calls."""
    calls = []
    replies = []

    def fake_run(args, **kwargs):
        calls.append((args, kwargs))
        return replies.pop(0) if replies else _Completed(0)

    monkeypatch.setattr(subprocess, "run", fake_run)
    return calls, replies


def test_ssh_invocation(captured):
    calls, _ = captured
    conn = SSHConnection("10.0.0.5", user="admin", port=2222, proxy_jump="bastion", identity_file="/keys/id")

    conn.run_command("systemctl is-active ssh")

    args, kwargs = calls[0]
    assert args[0] == "ssh"
    assert ["-p", "2222"] == args[1:3]
    assert "BatchMode=yes" in args
    assert args[args.index("-J") + 1] == "bastion"
    assert args[args.index("-i") + 1] == "/keys/id"
    assert args[-2] == "admin@10.0.0.5"
    assert args[-1] == "sudo -n sh -c 'systemctl is-active ssh'"
    assert kwargs["timeout"] == conn.default_timeout


def test_ssh_without_sudo(captured):
    calls, _ = captured

    SSHConnection("vm", sudo=False).run_command("id -u")

    assert calls[0][0][-1] == "sh -c 'id -u'"


def test_ssh_255_is_connection_lost(captured):
    _, replies = captured
    replies.append(_Completed(255, stderr="ssh: connect to host vm port 22: Connection refused"))

    with pytest.raises(ConnectionLost) as exc:
        SSHConnection("vm").run_command("true")

    assert "Connection refused" in exc.value.message


def test_ssh_remote_255_is_also_connection_lost(captured):
    """Test a remote command exiting 255 cannot be told apart from an ssh error."""
    _, replies = captured
    replies.append(_Completed(255, stderr=""))

    with pytest.raises(ConnectionLost):
        SSHConnection("vm").run_command("exit 255")


def test_ssh_command_failure_is_result(captured):
    _, replies = captured
    replies.append(_Completed(1, stderr="Unit foo.service not found."))

    result = SSHConnection("vm").run_command("systemctl status foo")

    assert result.exit_code == 1
    assert "not found" in result.stderr


def test_ssh_write_file_streams_content(captured):
    calls, _ = captured

    SSHConnection("vm").write_file("/etc/motd", "welcome\n", mode=0o644, owner="root", group="root")

    args, kwargs = calls[0]
    assert kwargs["input"] == "welcome\n"
    assert "cat > /etc/motd && chmod 644 /etc/motd && chown root:root /etc/motd" in args[-1]
