"""
Actions - One class per directive body kind

Every action re-checks live host state before deciding whether to mutate.
Idempotency comes from probing the host, never from local records of
earlier runs.

Two shapes:
- File-producing actions (file with content, lineinfile, sysctl) expose
  propose(); the executor writes the proposed content (through the
  Validation Gate when required), then calls finish() for post-write
  steps (attributes, reload).
- All other actions expose apply(dry_run) and mutate directly.

Command failures are returned as ActionResult(failed=True) so the executor
can classify them per failure_policy. Host I/O failures raise CommitFailed;
ConnectionLost always propagates.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import re
import shlex

from directives import (
    AssertBody,
    CommandBody,
    FileBody,
    LineInFileBody,
    PackageBody,
    ProbeBody,
    ServiceBody,
    SysctlBody,
    UserBody,
    RunContext,
    evaluate_guard,
    body_produces_file
)
from directives.errors import CommitFailed
from hostio import CommandResult, FileApplier, parse_mode

logger = logging.getLogger(__name__)

APT_ENV = "DEBIAN_FRONTEND=noninteractive"
SYSCTL_HEADER = "# Managed by converge. Local edits are overwritten.\n"


@dataclass(frozen=True)
class ActionResult:
    """What one action did (or would do) on the host."""
    changed: bool = False
    failed: bool = False
    message: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False
    backup_path: Optional[str] = None

    @classmethod
    def from_command(
        cls,
        result: CommandResult,
        changed: bool,
        message: str = ""
    ) -> "ActionResult":
        return cls(
            changed=changed,
            failed=not result.ok,
            message=message or (f"timed out: {result.command}" if result.timed_out else ""),
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            timed_out=result.timed_out
        )

    def as_command_result(self) -> CommandResult:
        """View for success predicates over non-command actions."""
        exit_code = self.exit_code
        if exit_code is None:
            exit_code = 1 if self.failed else 0
        return CommandResult(
            command="",
            stdout=self.stdout,
            stderr=self.stderr,
            exit_code=exit_code,
            timed_out=self.timed_out
        )


@dataclass(frozen=True)
class FileProposal:
    """Current vs proposed content of one file."""
    path: str
    current: Optional[str]
    proposed: Optional[str]
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None
    backup: bool = False

    @property
    def changed(self) -> bool:
        return self.proposed is not None and self.proposed != self.current


class Action:
    """Base class: a rendered body bound to one host connection."""

    produces_file = False

    def __init__(self, body, connection, context: RunContext, timeout: Optional[float] = None):
        self.body = body
        self.connection = connection
        self.context = context
        self.timeout = timeout
        self.files = FileApplier(connection, dry_run=False, timeout=timeout)

    def run(self, cmd: str) -> CommandResult:
        return self.connection.run_command(cmd, timeout=self.timeout)

    def apply(self, dry_run: bool = False) -> ActionResult:
        raise NotImplementedError


class FileProducingAction(Action):
    """Action whose effect is a full replacement of one file's content."""

    produces_file = True

    def propose(self) -> FileProposal:
        raise NotImplementedError

    def finish(self, proposal: FileProposal, written: bool, dry_run: bool) -> ActionResult:
        """
        Converge attributes after the content step.

        Args:
            proposal: The proposal that was (or would be) written
            written: Whether new content was committed (or would be)
            dry_run: Report only
        """
        changed = written
        if proposal.current is not None or (written and not dry_run):
            applier = FileApplier(self.connection, dry_run=dry_run, timeout=self.timeout)
            if applier.ensure_attributes(proposal.path, proposal.mode, proposal.owner, proposal.group):
                changed = True
        return ActionResult(
            changed=changed,
            message=f"{'would update' if dry_run else 'updated'} {proposal.path}" if changed else ""
        )


# ==================== Commands ====================

class CommandAction(Action):
    def apply(self, dry_run: bool = False) -> ActionResult:
        body: CommandBody = self.body

        if body.creates and self.files.exists(body.creates):
            return ActionResult(message=f"{body.creates} exists")

        if body.unless:
            check = self.run(body.unless)
            if check.ok:
                return ActionResult(message="unless condition holds", stdout=check.stdout)

        if dry_run:
            return ActionResult(changed=True, message=f"would run: {body.cmd}")

        result = self.run(body.cmd)
        changed = True
        if body.changed_regex is not None:
            changed = re.search(body.changed_regex, result.stdout, re.MULTILINE) is not None
        return ActionResult.from_command(result, changed=changed and result.ok)


class ProbeAction(Action):
    """Read-only command. Runs in dry-run too; a nonzero exit is data, not failure."""

    def apply(self, dry_run: bool = False) -> ActionResult:
        body: ProbeBody = self.body
        result = self.run(body.cmd)
        return ActionResult(
            changed=False,
            failed=False,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            timed_out=result.timed_out
        )


class AssertAction(Action):
    """Evaluates expressions against the run context only."""

    def apply(self, dry_run: bool = False) -> ActionResult:
        body: AssertBody = self.body
        failing = [expr for expr in body.that if not evaluate_guard(expr, self.context)]
        if failing:
            message = body.msg or f"Assertion failed: {failing[0]}"
            return ActionResult(failed=True, message=message, stderr=message)
        return ActionResult(message="all assertions passed")


# ==================== Files ====================

class FileAction(FileProducingAction):
    """file: content, directory or absent."""

    def __init__(self, body, connection, context, timeout=None):
        super().__init__(body, connection, context, timeout)
        self.produces_file = body_produces_file(body)

    def propose(self) -> FileProposal:
        body: FileBody = self.body
        return FileProposal(
            path=body.path,
            current=self.files.read(body.path),
            proposed=body.content,
            mode=parse_mode(body.mode),
            owner=body.owner,
            group=body.group,
            backup=body.backup
        )

    def apply(self, dry_run: bool = False) -> ActionResult:
        """directory / absent / attributes-only file. Content goes through propose()."""
        body: FileBody = self.body
        applier = FileApplier(self.connection, dry_run=dry_run, timeout=self.timeout)

        if body.state == "absent":
            changed = applier.remove(body.path)
            return ActionResult(changed=changed, message=f"removed {body.path}" if changed else "")

        if body.state == "directory":
            created = applier.make_dirs(body.path)
            if created and dry_run:
                return ActionResult(changed=True, message=f"would create {body.path}")
            attrs = applier.ensure_attributes(body.path, parse_mode(body.mode), body.owner, body.group)
            return ActionResult(changed=created or attrs)

        # state: file without content only manages attributes
        if not self.files.exists(body.path):
            return ActionResult(failed=True, message=f"{body.path} does not exist", exit_code=1)
        attrs = applier.ensure_attributes(body.path, parse_mode(body.mode), body.owner, body.group)
        return ActionResult(changed=attrs)


def apply_line_rules(lines: List[str], rules, state: str) -> List[str]:
    """
    lineinfile semantics over a list of lines.

    present + regexp: the last matching line is replaced; without a match
    the line is appended unless already present verbatim.
    absent: lines matching regexp (or equal to line) are removed.
    """
    lines = list(lines)
    for rule in rules:
        pattern = re.compile(rule.regexp) if rule.regexp else None

        if state == "absent":
            if pattern is not None:
                lines = [line for line in lines if not pattern.search(line)]
            else:
                lines = [line for line in lines if line != rule.line]
            continue

        if pattern is not None:
            matches = [i for i, line in enumerate(lines) if pattern.search(line)]
            if matches:
                lines[matches[-1]] = rule.line
                continue
        if rule.line not in lines:
            lines.append(rule.line)
    return lines


class LineInFileAction(FileProducingAction):
    def propose(self) -> FileProposal:
        body: LineInFileBody = self.body
        current = self.files.read(body.path)

        if current is None:
            if body.state == "absent":
                proposed = None
            elif not body.create:
                raise CommitFailed(f"{body.path} does not exist and create is false")
            else:
                proposed = "\n".join(apply_line_rules([], body.lines, body.state)) + "\n"
        else:
            old_lines = current.splitlines()
            new_lines = apply_line_rules(old_lines, body.lines, body.state)
            if new_lines == old_lines:
                proposed = current
            else:
                proposed = "\n".join(new_lines) + ("\n" if new_lines else "")

        return FileProposal(
            path=body.path,
            current=current,
            proposed=proposed,
            mode=parse_mode(body.mode),
            owner=body.owner,
            group=body.group,
            backup=body.backup
        )


def _normalize_sysctl(value: str) -> str:
    return " ".join(value.split())


class SysctlAction(FileProducingAction):
    """Persist params to a sysctl.d drop-in, then load them if live values differ."""

    def render_file(self) -> str:
        body: SysctlBody = self.body
        return SYSCTL_HEADER + "".join(f"{key} = {value}\n" for key, value in body.params.items())

    def propose(self) -> FileProposal:
        body: SysctlBody = self.body
        return FileProposal(
            path=body.sysctl_file,
            current=self.files.read(body.sysctl_file),
            proposed=self.render_file(),
            mode=0o644,
            backup=False
        )

    def live_drift(self) -> Dict[str, Tuple[str, str]]:
        """Params whose running value differs: name -> (live, wanted)."""
        body: SysctlBody = self.body
        drift = {}
        for key, value in body.params.items():
            live = self.run(f"sysctl -n {shlex.quote(key)}")
            if not live.ok or _normalize_sysctl(live.stdout) != _normalize_sysctl(value):
                drift[key] = (live.stdout.strip(), value)
        return drift

    def finish(self, proposal: FileProposal, written: bool, dry_run: bool) -> ActionResult:
        result = super().finish(proposal, written, dry_run)
        body: SysctlBody = self.body
        if not body.reload:
            return result

        drift = self.live_drift()
        if not drift:
            return result
        if dry_run:
            return ActionResult(changed=True, message=f"would load {', '.join(sorted(drift))}")

        loaded = self.run(f"sysctl -p {shlex.quote(body.sysctl_file)}")
        if not loaded.ok:
            return ActionResult.from_command(loaded, changed=True, message="sysctl -p failed")
        logger.debug(f"Loaded sysctl params: {', '.join(sorted(drift))}")
        return ActionResult(changed=True, message=f"loaded {', '.join(sorted(drift))}", stdout=loaded.stdout)


# ==================== System state ====================

class ServiceAction(Action):
    ENABLED_STATES = {"enabled", "enabled-runtime", "static", "alias", "indirect", "generated"}

    def apply(self, dry_run: bool = False) -> ActionResult:
        body: ServiceBody = self.body
        name = shlex.quote(body.name)
        steps: List[str] = []

        if body.daemon_reload and not dry_run:
            reload = self.run("systemctl daemon-reload")
            if not reload.ok:
                return ActionResult.from_command(reload, changed=False, message="daemon-reload failed")

        if body.enabled is not None:
            current = self.run(f"systemctl is-enabled {name}").stdout.strip()
            is_enabled = current in self.ENABLED_STATES
            if body.enabled != is_enabled:
                steps.append(f"systemctl {'enable' if body.enabled else 'disable'} {name}")

        if body.state in ("started", "stopped"):
            active = self.run(f"systemctl is-active --quiet {name}").exit_code == 0
            if body.state == "started" and not active:
                steps.append(f"systemctl start {name}")
            elif body.state == "stopped" and active:
                steps.append(f"systemctl stop {name}")
        elif body.state == "restarted":
            steps.append(f"systemctl restart {name}")
        elif body.state == "reloaded":
            steps.append(f"systemctl reload-or-restart {name}")

        if not steps:
            return ActionResult(message=f"{body.name} already in desired state")
        if dry_run:
            return ActionResult(changed=True, message="would run: " + "; ".join(steps))

        for step in steps:
            result = self.run(step)
            if not result.ok:
                return ActionResult.from_command(result, changed=True, message=f"failed: {step}")
        return ActionResult(changed=True, message="; ".join(steps))


class PackageAction(Action):
    """apt/dpkg package presence."""

    def installed(self, name: str) -> bool:
        result = self.run("dpkg-query -W -f='${Status}' " + shlex.quote(name) + " 2>/dev/null")
        return result.ok and "install ok installed" in result.stdout

    def apply(self, dry_run: bool = False) -> ActionResult:
        body: PackageBody = self.body
        if body.state == "present":
            pending = [n for n in body.names if not self.installed(n)]
            verb = "install"
        else:
            pending = [n for n in body.names if self.installed(n)]
            verb = "remove"

        if dry_run:
            messages = [f"would {verb}: {' '.join(pending)}"] if pending else []
            if body.autoremove:
                messages.append("would autoremove")
            return ActionResult(changed=bool(pending), message="; ".join(messages))

        changed = False
        outputs: List[str] = []

        if pending:
            if body.update_cache:
                update = self.run(f"{APT_ENV} apt-get update -q")
                if not update.ok:
                    return ActionResult.from_command(update, changed=False, message="apt-get update failed")
            names = " ".join(shlex.quote(n) for n in pending)
            result = self.run(f"{APT_ENV} apt-get {verb} -y -q {names}")
            if not result.ok:
                return ActionResult.from_command(result, changed=False, message=f"apt-get {verb} failed")
            changed = True
            outputs.append(result.stdout)

        if body.autoremove:
            result = self.run(f"{APT_ENV} apt-get autoremove -y -q")
            if not result.ok:
                return ActionResult.from_command(result, changed=changed, message="apt-get autoremove failed")
            removed = re.search(r"(\d+) to remove", result.stdout)
            if removed and int(removed.group(1)) > 0:
                changed = True
            outputs.append(result.stdout)

        message = f"{verb}ed {' '.join(pending)}" if pending else ""
        return ActionResult(changed=changed, message=message, stdout="".join(outputs))


class UserAction(Action):
    def _shell_of(self, name: str) -> str:
        result = self.run(f"getent passwd {shlex.quote(name)}")
        fields = result.stdout.strip().split(":")
        return fields[6] if len(fields) >= 7 else ""

    def _groups_of(self, name: str) -> List[str]:
        return self.run(f"id -nG {shlex.quote(name)}").stdout.split()

    def _password_locked(self, name: str) -> bool:
        fields = self.run(f"passwd -S {shlex.quote(name)}").stdout.split()
        return len(fields) > 1 and fields[1] == "L"

    def apply(self, dry_run: bool = False) -> ActionResult:
        body: UserBody = self.body
        name = shlex.quote(body.name)
        steps: List[str] = []

        exists = self.run(f"id -u {name}").exit_code == 0
        if not exists:
            parts = ["useradd"]
            if body.create_home:
                parts.append("-m")
            if body.shell:
                parts += ["-s", shlex.quote(body.shell)]
            if body.groups:
                parts += ["-G", shlex.quote(",".join(body.groups))]
            parts.append(name)
            steps.append(" ".join(parts))
            if body.lock_password:
                steps.append(f"passwd -l {name}")
        else:
            if body.shell and self._shell_of(body.name) != body.shell:
                steps.append(f"usermod -s {shlex.quote(body.shell)} {name}")
            if body.groups:
                current = set(self._groups_of(body.name))
                wanted = set(body.groups)
                if body.append and not wanted <= current:
                    missing = ",".join(g for g in body.groups if g not in current)
                    steps.append(f"usermod -aG {shlex.quote(missing)} {name}")
                elif not body.append and wanted != current - {body.name}:
                    steps.append(f"usermod -G {shlex.quote(','.join(body.groups))} {name}")
            if body.lock_password and not self._password_locked(body.name):
                steps.append(f"passwd -l {name}")

        if not steps:
            return ActionResult(message=f"user {body.name} up to date")
        if dry_run:
            return ActionResult(changed=True, message="would run: " + "; ".join(steps))

        for step in steps:
            result = self.run(step)
            if not result.ok:
                return ActionResult.from_command(result, changed=not exists, message=f"failed: {step}")
        return ActionResult(changed=True, message="; ".join(steps))


ACTION_CLASSES = {
    "command": CommandAction,
    "probe": ProbeAction,
    "assert": AssertAction,
    "file": FileAction,
    "lineinfile": LineInFileAction,
    "sysctl": SysctlAction,
    "service": ServiceAction,
    "package": PackageAction,
    "user": UserAction,
}


def build_action(body, connection, context: RunContext, timeout: Optional[float] = None) -> Action:
    """Bind a rendered body to a connection."""
    try:
        action_class = ACTION_CLASSES[body.kind]
    except KeyError:
        raise ValueError(f"No action registered for kind '{body.kind}'")
    return action_class(body, connection, context, timeout)
