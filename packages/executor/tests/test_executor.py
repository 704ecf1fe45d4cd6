"""
Tests for Directive Executor

Validates:
- Guard, render and classification (failure_policy, change_policy)
- Probes never fail unless a custom predicate says so
- Timeouts are failures per failure_policy
- File writes are idempotent and keep backups
- Gated edits: validator pass commits, validator failure leaves the live file untouched
- Dry-run stages and validates but never commits
- Handlers run through the same machinery
"""

import os
from pathlib import Path

import pytest

from directives import RunContext
from directives.errors import ConnectionLost
from executor import DirectiveExecutor, EngineConfig, HandlerQueue, Outcome


VALIDATOR_SCRIPT = "#!/bin/sh\n! grep -q Bogus \"$1\"\n"


@pytest.fixture
def workdir(tmp_path):
    """Workspace with a fake sshd_config and a validator rejecting 'Bogus'."""
    (tmp_path / "sshd_config").write_text("Port 22\nPasswordAuthentication yes\n")
    script = tmp_path / "validate.sh"
    script.write_text(VALIDATOR_SCRIPT)
    script.chmod(0o755)
    return tmp_path


@pytest.fixture
def executor(local):
    return DirectiveExecutor(local, config=EngineConfig(command_timeout=30.0))


def _leftovers(directory: Path):
    return [p.name for p in directory.iterdir() if ".converge-" in p.name]


# ==================== Guard / Classification Tests ====================

def test_guard_false_skips_without_host_access(fake, context, make_directive):
    """Test a false guard records skipped and runs nothing."""
    executor = DirectiveExecutor(fake)
    d = make_directive("ufw", when="enable_firewall is defined", command="ufw enable")

    result = executor.execute(d, context)

    assert result.outcome == Outcome.SKIPPED
    assert fake.commands == []


def test_failed_command_fatal(executor, context, make_directive):
    """Test a failing command under the fatal policy."""
    d = make_directive("boom", command="echo broken >&2; exit 3")

    result = executor.execute(d, context)

    assert result.outcome == Outcome.FAILED_FATAL
    assert result.error_code == "directive_failed"
    assert result.exit_code == 3
    assert "broken" in result.stderr


def test_failed_command_ignored(executor, context, make_directive):
    """Test the ignored policy records failed_ignored."""
    d = make_directive("optional", command="exit 1", failure_policy="ignored")

    assert executor.execute(d, context).outcome == Outcome.FAILED_IGNORED


def test_custom_predicate_accepts_nonzero(executor, context, make_directive):
    """Test success_when overrides the exit code check."""
    d = make_directive(
        "grep-probe",
        command="exit 1",
        failure_policy="custom_predicate",
        success_when={"rc_in": [0, 1]},
        change_policy="never_changed"
    )

    assert executor.execute(d, context).outcome == Outcome.OK_UNCHANGED


def test_custom_predicate_non_fatal(executor, context, make_directive):
    """Test a non-matching predicate with fatal=false is ignored, not fatal."""
    d = make_directive(
        "wait-ready",
        command="echo starting",
        failure_policy="custom_predicate",
        success_when={"stdout_contains": "ready", "fatal": False}
    )

    assert executor.execute(d, context).outcome == Outcome.FAILED_IGNORED


def test_probe_never_fails(executor, context, make_directive):
    """Test a probe with nonzero exit is ok_unchanged and keeps its output."""
    d = make_directive("swap-probe", probe="echo none; exit 7")

    result = executor.execute(d, context)

    assert result.outcome == Outcome.OK_UNCHANGED
    assert result.exit_code == 7
    assert result.stdout.strip() == "none"


def test_always_changed_policy(executor, context, make_directive):
    """Test change_policy always_changed reports ok_changed."""
    d = make_directive("noop", command="true", change_policy="always_changed")

    assert executor.execute(d, context).outcome == Outcome.OK_CHANGED


def test_timeout_is_failure(executor, context, make_directive):
    """Test a timed-out command is classified per failure_policy."""
    d = make_directive("slow", command="sleep 5", timeout=0.5)

    result = executor.execute(d, context)

    assert result.outcome == Outcome.FAILED_FATAL
    assert result.error_code == "timeout"
    assert result.timed_out is True


def test_render_error_is_fatal(executor, context, make_directive):
    """Test an undefined variable fails the directive before any host call."""
    d = make_directive("bad-template", command="echo {{ not_declared }}")

    result = executor.execute(d, context)

    assert result.outcome == Outcome.FAILED_FATAL
    assert result.error_code == "render_error"


def test_connection_lost_propagates(fake, context, make_directive, lost_connection):
    """Test ConnectionLost is never classified by the executor."""
    fake.on(r".*", raises=lost_connection)
    executor = DirectiveExecutor(fake)

    with pytest.raises(ConnectionLost):
        executor.execute(make_directive("any", command="true"), context)


# ==================== File Tests ====================

def test_file_write_is_idempotent(executor, tmp_path, make_directive):
    """Test first write changes, second write is ok_unchanged."""
    target = tmp_path / "app.conf"
    ctx = RunContext.resolve({"workdir": str(tmp_path)})
    d = make_directive("app-conf", file={
        "path": "{{ workdir }}/app.conf",
        "content": "listen = 8080\n",
        "mode": "0640"
    })

    first = executor.execute(d, ctx)
    second = executor.execute(d, ctx)

    assert first.outcome == Outcome.OK_CHANGED
    assert second.outcome == Outcome.OK_UNCHANGED
    assert target.read_text() == "listen = 8080\n"
    assert (os.stat(target).st_mode & 0o777) == 0o640
    assert _leftovers(tmp_path) == []


def test_file_directory_and_absent(executor, tmp_path, make_directive):
    """Test directory creation and removal."""
    ctx = RunContext.resolve({"workdir": str(tmp_path)})
    make = make_directive("dir", file={"path": "{{ workdir }}/jail.d", "state": "directory"})
    remove = make_directive("rm", file={"path": "{{ workdir }}/jail.d", "state": "absent"})

    assert executor.execute(make, ctx).outcome == Outcome.OK_CHANGED
    assert (tmp_path / "jail.d").is_dir()
    assert executor.execute(make, ctx).outcome == Outcome.OK_UNCHANGED
    assert executor.execute(remove, ctx).outcome == Outcome.OK_CHANGED
    assert not (tmp_path / "jail.d").exists()


def test_lineinfile_backup_and_notify(local, workdir, make_directive):
    """Test a changed lineinfile keeps a backup and notifies its handler."""
    from directives import Handler
    queue = HandlerQueue({"restart-ssh": Handler(name="restart-ssh", body={"kind": "command", "cmd": "true"})})
    executor = DirectiveExecutor(local, handler_queue=queue)
    ctx = RunContext.resolve({"workdir": str(workdir)})
    d = make_directive(
        "sshd-no-passwords",
        lineinfile={
            "path": "{{ workdir }}/sshd_config",
            "lines": [{"regexp": "^#?PasswordAuthentication", "line": "PasswordAuthentication no"}]
        },
        notifies=["restart-ssh"]
    )

    result = executor.execute(d, ctx)

    assert result.outcome == Outcome.OK_CHANGED
    assert result.notified == ("restart-ssh",)
    assert queue.pending == ["restart-ssh"]
    assert (workdir / "sshd_config").read_text() == "Port 22\nPasswordAuthentication no\n"
    assert result.backup_path is not None
    assert Path(result.backup_path).read_text() == "Port 22\nPasswordAuthentication yes\n"


# ==================== Validation Gate Tests ====================

def _gated(make_directive, value: str):
    return make_directive(
        "sshd-config",
        risk_class="lockout_risk",
        validator="{{ workdir }}/validate.sh %s",
        lineinfile={
            "path": "{{ workdir }}/sshd_config",
            "lines": [{"regexp": "^#?PasswordAuthentication", "line": f"PasswordAuthentication {value}"}]
        }
    )


def test_gate_pass_commits(executor, workdir, make_directive):
    """Test a validated proposal replaces the live file."""
    ctx = RunContext.resolve({"workdir": str(workdir)})

    result = executor.execute(_gated(make_directive, "no"), ctx)

    assert result.outcome == Outcome.OK_CHANGED
    assert result.gate["passed"] is True
    assert [h["to"] for h in result.gate["history"]] == ["validated", "committed"]
    assert "PasswordAuthentication no" in (workdir / "sshd_config").read_text()
    assert _leftovers(workdir) == []


def test_gate_rejection_leaves_live_file_untouched(executor, workdir, make_directive):
    """Test validator failure: failed_fatal, byte-for-byte unchanged live file."""
    before = (workdir / "sshd_config").read_bytes()
    ctx = RunContext.resolve({"workdir": str(workdir)})

    result = executor.execute(_gated(make_directive, "Bogus"), ctx)

    assert result.outcome == Outcome.FAILED_FATAL
    assert result.error_code == "validation_failed"
    assert result.gate["passed"] is False
    assert (workdir / "sshd_config").read_bytes() == before
    assert _leftovers(workdir) == []
    assert list(workdir.glob("sshd_config.*.bak")) == []


def test_gate_staging_failure_leaves_no_staged_copy(executor, workdir, make_directive):
    """Test an unknown owner fails the directive and removes the half-written staged file."""
    before = (workdir / "sshd_config").read_bytes()
    ctx = RunContext.resolve({"workdir": str(workdir)})
    directive = make_directive(
        "sshd-config",
        risk_class="lockout_risk",
        validator="{{ workdir }}/validate.sh %s",
        lineinfile={
            "path": "{{ workdir }}/sshd_config",
            "owner": "no_such_user_converge",
            "lines": [{"regexp": "^#?PasswordAuthentication", "line": "PasswordAuthentication no"}]
        }
    )

    result = executor.execute(directive, ctx)

    assert result.outcome == Outcome.FAILED_FATAL
    assert (workdir / "sshd_config").read_bytes() == before
    assert _leftovers(workdir) == []


def test_gate_skipped_when_content_unchanged(local, workdir, make_directive):
    """Test an already-converged file does not run the validator."""
    (workdir / "validate.sh").write_text("#!/bin/sh\nexit 1\n")
    (workdir / "sshd_config").write_text("Port 22\nPasswordAuthentication no\n")
    executor = DirectiveExecutor(local)
    ctx = RunContext.resolve({"workdir": str(workdir)})

    result = executor.execute(_gated(make_directive, "no"), ctx)

    assert result.outcome == Outcome.OK_UNCHANGED
    assert result.gate is None


def test_dry_run_validates_but_never_commits(local, workdir, make_directive):
    """Test dry-run: validator runs, live file stays, nothing staged remains."""
    before = (workdir / "sshd_config").read_bytes()
    executor = DirectiveExecutor(local, config=EngineConfig(dry_run=True))
    ctx = RunContext.resolve({"workdir": str(workdir)})

    passing = executor.execute(_gated(make_directive, "no"), ctx)
    failing = executor.execute(_gated(make_directive, "Bogus"), ctx)

    assert passing.outcome == Outcome.OK_CHANGED
    assert "would update" in passing.message
    assert failing.outcome == Outcome.FAILED_FATAL
    assert (workdir / "sshd_config").read_bytes() == before
    assert _leftovers(workdir) == []


# ==================== Handler Tests ====================

def test_run_handler_changed(executor, tmp_path, make_handler):
    """Test a handler command fires and reports ok_changed."""
    ctx = RunContext.resolve({"workdir": str(tmp_path)})
    h = make_handler("restart-app", command="touch {{ workdir }}/restarted")

    result = executor.run_handler(h, ctx, notified_by=["app-conf"])

    assert result.outcome == Outcome.OK_CHANGED
    assert result.notified_by == ("app-conf",)
    assert (tmp_path / "restarted").exists()


def test_run_handler_failure_policies(executor, context, make_handler):
    """Test fatal and ignored handler failures."""
    fatal = executor.run_handler(make_handler("a", command="exit 1"), context)
    ignored = executor.run_handler(make_handler("b", command="exit 1", failure_policy="ignored"), context)

    assert fatal.outcome == Outcome.FAILED_FATAL
    assert fatal.error_code == "handler_failed"
    assert ignored.outcome == Outcome.FAILED_IGNORED


def test_run_handler_dry_run_skipped(fake, context, make_handler):
    """Test handlers are reported as skipped in dry-run."""
    executor = DirectiveExecutor(fake, config=EngineConfig(dry_run=True))

    result = executor.run_handler(make_handler("restart-ssh", command="systemctl restart ssh"), context)

    assert result.outcome == Outcome.SKIPPED
    assert fake.commands == []
