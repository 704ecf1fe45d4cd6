"""
Tests for File Applier

Validates:
- read returns None for missing files
- write_atomic skips identical content and keeps backups
- staging never touches the live path and leaves no copy behind on failure
- dry-run reports without writing
"""

import os

import pytest

from directives.errors import CommitFailed
from hostio import FileApplier, LocalConnection, parse_mode


@pytest.fixture
def files():
    return FileApplier(LocalConnection(default_timeout=10.0))


def test_parse_mode():
    assert parse_mode("0644") == 0o644
    assert parse_mode("600") == 0o600
    assert parse_mode(0o755) == 0o755
    assert parse_mode(None) is None


def test_read_missing_is_none(files, tmp_path):
    assert files.read(str(tmp_path / "absent")) is None


def test_read_preserves_content(files, tmp_path):
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1 localhost\n\n")

    assert files.read(str(path)) == "127.0.0.1 localhost\n\n"


def test_write_atomic_and_idempotent(files, tmp_path):
    path = str(tmp_path / "jail.local")

    first = files.write_atomic(path, "[sshd]\nenabled = true\n", mode=0o640)
    second = files.write_atomic(path, "[sshd]\nenabled = true\n", mode=0o640)

    assert first.changed is True
    assert second.changed is False
    assert (os.stat(path).st_mode & 0o777) == 0o640
    assert [p for p in os.listdir(tmp_path) if ".converge-" in p] == []


def test_write_atomic_backup(files, tmp_path):
    path = tmp_path / "sshd_config"
    path.write_text("Port 22\n")

    result = files.write_atomic(str(path), "Port 2222\n", backup=True)

    assert path.read_text() == "Port 2222\n"
    assert result.backup_path.endswith(".bak")
    assert open(result.backup_path).read() == "Port 22\n"


def test_stage_leaves_live_file_alone(files, tmp_path):
    path = tmp_path / "sudoers"
    path.write_text("root ALL=(ALL) ALL\n")
    path.chmod(0o440)

    staged = files.stage(str(path), "deploy ALL=(ALL) NOPASSWD:ALL\n", purpose="stage")

    assert path.read_text() == "root ALL=(ALL) ALL\n"
    assert os.path.basename(staged).startswith(".sudoers.converge-stage-")
    assert (os.stat(staged).st_mode & 0o777) == 0o440

    files.discard(staged)
    assert not os.path.exists(staged)


def test_stage_failure_removes_staged_file(files, tmp_path):
    """Test a write that fails after creating the staged copy leaves nothing behind."""
    path = tmp_path / "sshd_config"
    path.write_text("Port 22\n")

    with pytest.raises(CommitFailed):
        files.stage(str(path), "Port 2222\n", owner="no_such_user_converge", purpose="stage")

    assert path.read_text() == "Port 22\n"
    assert [p for p in os.listdir(tmp_path) if ".converge-" in p] == []


def test_ensure_attributes(files, tmp_path):
    path = tmp_path / "authorized_keys"
    path.write_text("ssh-ed25519 AAAA deploy\n")
    path.chmod(0o644)

    assert files.ensure_attributes(str(path), mode=0o600) is True
    assert files.ensure_attributes(str(path), mode=0o600) is False
    assert (path.stat().st_mode & 0o777) == 0o600


def test_dry_run_writes_nothing(tmp_path):
    files = FileApplier(LocalConnection(default_timeout=10.0), dry_run=True)
    path = tmp_path / "new.conf"

    result = files.write_atomic(str(path), "x = 1\n")

    assert result.changed is True
    assert not path.exists()
    assert files.make_dirs(str(tmp_path / "d")) is True
    assert not (tmp_path / "d").exists()
