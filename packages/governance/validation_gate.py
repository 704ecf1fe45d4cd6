"""
Validation Gate - Stage → Validate → Atomically Replace

Protects critical live files (sshd_config, sudoers drop-ins) from ever
holding content their owning daemon would refuse. A remote host with a
broken sshd_config is a host nobody can log in to again.

Flow:
    1. stage(): proposed content → hidden sibling of the live path
    2. validate(): run validator with %s = staged path
         - exit 0      → VALIDATED
         - otherwise   → REJECTED, staged copy deleted, live file untouched
    3. commit(): (backup live file) → mv -f staged → live

Key Principle: the live path is only written by commit(), and commit()
refuses anything that is not VALIDATED.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import logging
import shlex
import uuid

from directives.errors import CommitFailed
from hostio import CommandResult, FileApplier

from .state_machine import GateLifecycle, GateState, GateStateError

logger = logging.getLogger(__name__)

STAGED_PATH_PLACEHOLDER = "%s"


@dataclass
class StagedArtifact:
    """A proposed replacement for one live file."""
    live_path: str
    staged_path: str
    artifact_id: str = field(default_factory=lambda: f"stage_{uuid.uuid4().hex[:12]}")
    lifecycle: GateLifecycle = field(default_factory=GateLifecycle)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def state(self) -> GateState:
        return self.lifecycle.state

    @property
    def history(self) -> List[Dict]:
        return self.lifecycle.history


@dataclass(frozen=True)
class GateDecision:
    """Validator verdict for one staged artifact."""
    artifact_id: str
    live_path: str
    command: str
    passed: bool
    result: CommandResult

    @property
    def diagnostic(self) -> str:
        text = self.result.stderr.strip() or self.result.stdout.strip()
        if self.result.timed_out:
            return f"validator timed out: {text}".strip()
        return text

    def to_dict(self) -> Dict:
        return {
            "artifact_id": self.artifact_id,
            "live_path": self.live_path,
            "command": self.command,
            "passed": self.passed,
            "exit_code": self.result.exit_code,
            "diagnostic": self.diagnostic
        }


@dataclass(frozen=True)
class CommitResult:
    path: str
    backup_path: Optional[str] = None


def render_validator_command(validator: str, staged_path: str) -> str:
    """Substitute the (shell-quoted) staged path for every %s."""
    if STAGED_PATH_PLACEHOLDER not in validator:
        raise ValueError(f"Validator has no {STAGED_PATH_PLACEHOLDER} placeholder: {validator}")
    return validator.replace(STAGED_PATH_PLACEHOLDER, shlex.quote(staged_path))


class ValidationGate:
    """
    Pre-commit check for risky file mutations.

    One gate per Run. Every artifact it stages is tracked until it reaches
    a terminal state; cleanup() discards whatever is left.
    """

    def __init__(self, connection, timeout: Optional[float] = None):
        """
        Initialize validation gate.

        Args:
            connection: HostConnection the artifacts live on
            timeout: Timeout for validator and file commands
        """
        self.connection = connection
        self.timeout = timeout
        self.files = FileApplier(connection, dry_run=False, timeout=timeout)
        self._artifacts: List[StagedArtifact] = []

    @property
    def artifacts(self) -> List[StagedArtifact]:
        return list(self._artifacts)

    def stage(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None
    ) -> StagedArtifact:
        """
        Write the proposed content next to the live file.

        Args:
            path: Live path the proposal would replace
            content: Proposed full file content
            mode/owner/group: Attributes for the staged copy (inherited
                from the live file when omitted)

        Returns:
            StagedArtifact in STAGED state
        """
        staged_path = self.files.stage(path, content, mode, owner, group, purpose="stage")
        artifact = StagedArtifact(live_path=path, staged_path=staged_path)
        self._artifacts.append(artifact)

        logger.debug(f"Staged {path} as {staged_path} ({artifact.artifact_id})")
        return artifact

    def validate(self, artifact: StagedArtifact, validator: str) -> GateDecision:
        """
        Run the validator against the staged copy.

        A rejected artifact is deleted immediately; the live path is never
        read or written here.

        Raises:
            GateStateError: If the artifact is not STAGED
        """
        if artifact.state != GateState.STAGED:
            raise GateStateError(
                f"Cannot validate artifact in state {artifact.state.value}: {artifact.live_path}"
            )

        command = render_validator_command(validator, artifact.staged_path)
        result = self.connection.run_command(command, timeout=self.timeout)
        passed = result.ok

        decision = GateDecision(
            artifact_id=artifact.artifact_id,
            live_path=artifact.live_path,
            command=command,
            passed=passed,
            result=result
        )

        if passed:
            artifact.lifecycle.transition(GateState.VALIDATED, "validator passed")
            logger.info(f"Gate: validator accepted proposal for {artifact.live_path}")
        else:
            self.files.discard(artifact.staged_path)
            artifact.lifecycle.transition(
                GateState.REJECTED,
                f"validator exit {result.exit_code}"
            )
            logger.error(
                f"Gate: validator rejected proposal for {artifact.live_path} "
                f"(exit {result.exit_code}): {decision.diagnostic}"
            )

        return decision

    def commit(self, artifact: StagedArtifact, backup: bool = True) -> CommitResult:
        """
        Atomically replace the live file with the validated staged copy.

        Raises:
            GateStateError: If the artifact is not VALIDATED
            CommitFailed: If backup or rename fails (staged copy removed)
        """
        if artifact.state != GateState.VALIDATED:
            raise GateStateError(
                f"Refusing to commit artifact in state {artifact.state.value}: {artifact.live_path}"
            )

        try:
            backup_path = self.files.promote(artifact.staged_path, artifact.live_path, backup=backup)
        except CommitFailed as e:
            self.files.discard(artifact.staged_path)
            artifact.lifecycle.transition(GateState.DISCARDED, f"commit failed: {e}")
            raise

        artifact.lifecycle.transition(GateState.COMMITTED, "renamed onto live path")
        logger.info(f"Gate: committed {artifact.live_path}")
        return CommitResult(path=artifact.live_path, backup_path=backup_path)

    def discard(self, artifact: StagedArtifact, reason: str = "discarded") -> None:
        """Drop a staged or validated artifact without touching the live file."""
        if artifact.lifecycle.is_terminal:
            return
        self.files.discard(artifact.staged_path)
        artifact.lifecycle.transition(GateState.DISCARDED, reason)
        logger.debug(f"Gate: discarded proposal for {artifact.live_path} ({reason})")

    def cleanup(self) -> int:
        """
        Discard every artifact that has not reached a terminal state.

        Returns:
            Number of artifacts discarded
        """
        pending = [a for a in self._artifacts if not a.lifecycle.is_terminal]
        for artifact in pending:
            self.discard(artifact, "run ended")
        if pending:
            logger.warning(f"Gate: cleaned up {len(pending)} pending staged file(s)")
        return len(pending)
