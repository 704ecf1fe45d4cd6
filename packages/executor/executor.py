"""
Directive Executor - Runs one directive against the host

Flow (per directive):
    1. Guard: `when` false → skipped
    2. Render the body against the RunContext
    3. File-producing body:
         gated (lockout_risk or validator) → stage → validate → commit
         ungated                           → write-then-rename
       Other bodies: action.apply()
    4. Classify via failure_policy / change_policy
    5. ok_changed → notify handlers

Safety:
- A rejected proposal raises ValidationFailed before the live path is touched
- Dry-run stages and validates but never commits
- ConnectionLost is never classified; it propagates to the Run
"""

from dataclasses import replace
from typing import Optional, Sequence, Tuple
import logging
import time

from directives import (
    ChangePolicy,
    Directive,
    FailurePolicy,
    Handler,
    RunContext
)
from directives.errors import (
    CommitFailed,
    GuardSkipped,
    HandlerFailed,
    RenderError,
    ValidationFailed
)
from governance import ValidationGate

from .actions import ActionResult, FileProducingAction, build_action
from .config import EngineConfig
from .report import DirectiveResult, HandlerResult, Outcome

logger = logging.getLogger(__name__)


class DirectiveExecutor:
    """
    Executes directives and handlers over one host connection.

    Coordinates:
    - actions: per-kind live-state checks and mutations
    - ValidationGate: stage/validate/commit for risky file edits
    - HandlerQueue: notifications from changed directives
    """

    def __init__(
        self,
        connection,
        gate: Optional[ValidationGate] = None,
        handler_queue=None,
        config: Optional[EngineConfig] = None
    ):
        """
        Initialize executor.

        Args:
            connection: HostConnection
            gate: Validation gate (default: one bound to the connection)
            handler_queue: HandlerQueue receiving notifications (optional)
            config: Engine configuration
        """
        self.connection = connection
        self.config = config or EngineConfig()
        self.gate = gate or ValidationGate(connection, timeout=self.config.command_timeout)
        self.handler_queue = handler_queue

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def _timeout(self, declared: Optional[float]) -> float:
        return declared or self.config.command_timeout

    # ==================== Directives ====================

    def execute(self, directive: Directive, context: RunContext) -> DirectiveResult:
        """
        Execute one directive.

        Returns:
            DirectiveResult with a definitive outcome

        Raises:
            ConnectionLost: If the host becomes unreachable
        """
        started = time.monotonic()
        gate_info = None

        try:
            if not directive.evaluate_guard(context):
                raise GuardSkipped(f"guard is false: {directive.when}", directive.id)

            body = directive.render(context)
            action = build_action(body, self.connection, context, self._timeout(directive.timeout))

            if action.produces_file:
                action_result, gate_info = self._apply_file(directive, action, context)
            else:
                action_result = action.apply(dry_run=self.dry_run)

        except GuardSkipped as e:
            logger.info(f"[{directive.id}] skipped: {e.message}")
            return self._result(directive, Outcome.SKIPPED, started, message=e.message)

        except RenderError as e:
            logger.error(f"[{directive.id}] cannot render: {e.message}")
            return self._result(
                directive, Outcome.FAILED_FATAL, started,
                message=e.message, error_code=e.code, stderr=e.message
            )

        except ValidationFailed as e:
            logger.error(f"[{directive.id}] validation failed, live file untouched: {e.message}")
            return self._result(
                directive, Outcome.FAILED_FATAL, started,
                message=e.message,
                error_code=e.code,
                stdout=e.details.get("stdout", ""),
                stderr=e.details.get("stderr", ""),
                exit_code=e.details.get("exit_code"),
                gate=e.details.get("gate")
            )

        except CommitFailed as e:
            action_result = ActionResult(failed=True, message=e.message, stderr=e.message)
            outcome, error_code = self._classify_failure(directive, action_result, e.code)
            self._log_failure(directive, outcome, e.message)
            return self._result(
                directive, outcome, started,
                message=e.message, error_code=error_code, stderr=e.message, gate=gate_info
            )

        outcome, error_code = self.classify(directive, action_result)
        if outcome.is_failure:
            self._log_failure(directive, outcome, action_result.message or action_result.stderr.strip())
        else:
            logger.info(f"[{directive.id}] {outcome.value}" + (f": {action_result.message}" if action_result.message else ""))

        notified: Tuple[str, ...] = ()
        if outcome == Outcome.OK_CHANGED and directive.notifies and self.handler_queue is not None:
            for name in directive.notifies:
                self.handler_queue.notify(name, directive.id)
            notified = tuple(directive.notifies)

        return self._result(
            directive, outcome, started,
            message=action_result.message,
            error_code=error_code,
            stdout=action_result.stdout,
            stderr=action_result.stderr,
            exit_code=action_result.exit_code,
            timed_out=action_result.timed_out,
            notified=notified,
            gate=gate_info,
            backup_path=action_result.backup_path
        )

    def _apply_file(
        self,
        directive: Directive,
        action: FileProducingAction,
        context: RunContext
    ) -> Tuple[ActionResult, Optional[dict]]:
        """
        Converge a file-producing action.

        Returns:
            (ActionResult, gate decision dict or None)

        Raises:
            ValidationFailed: If the validator rejects the staged proposal
            CommitFailed: If staging, backup or rename fails
        """
        proposal = action.propose()
        if not proposal.changed:
            return action.finish(proposal, written=False, dry_run=self.dry_run), None

        backup = self.config.backup_files and proposal.current is not None

        if not directive.requires_gate:
            if self.dry_run:
                return action.finish(proposal, written=True, dry_run=True), None
            staged = action.files.stage(
                proposal.path, proposal.proposed, proposal.mode, proposal.owner, proposal.group
            )
            backup_path = action.files.promote(staged, proposal.path, backup=backup and proposal.backup)
            result = action.finish(proposal, written=True, dry_run=False)
            return replace(result, backup_path=backup_path), None

        validator = directive.render_validator(context)
        artifact = self.gate.stage(
            proposal.path, proposal.proposed, proposal.mode, proposal.owner, proposal.group
        )
        decision = self.gate.validate(artifact, validator)
        gate_info = {**decision.to_dict(), "history": list(artifact.history)}

        if not decision.passed:
            raise ValidationFailed(
                f"Validator rejected proposed {proposal.path}: {decision.diagnostic}",
                directive.id,
                details={
                    "stdout": decision.result.stdout,
                    "stderr": decision.result.stderr,
                    "exit_code": decision.result.exit_code,
                    "gate": gate_info
                }
            )

        if self.dry_run:
            self.gate.discard(artifact, "dry run")
            result = action.finish(proposal, written=True, dry_run=True)
            return replace(result, message=f"would update {proposal.path} (validator passed)"), gate_info

        commit = self.gate.commit(artifact, backup=backup)
        gate_info["history"] = list(artifact.history)
        result = action.finish(proposal, written=True, dry_run=False)
        return replace(result, backup_path=commit.backup_path), gate_info

    # ==================== Classification ====================

    def classify(self, directive: Directive, result: ActionResult) -> Tuple[Outcome, Optional[str]]:
        """Apply failure_policy, then change_policy."""
        if directive.failure_policy == FailurePolicy.CUSTOM_PREDICATE:
            failed = not directive.success_when.matches(result.as_command_result())
        else:
            failed = result.failed

        if failed:
            return self._classify_failure(directive, result, "directive_failed")

        if directive.is_probe or directive.change_policy == ChangePolicy.NEVER_CHANGED:
            changed = False
        elif directive.change_policy == ChangePolicy.ALWAYS_CHANGED:
            changed = True
        else:
            changed = result.changed

        return (Outcome.OK_CHANGED if changed else Outcome.OK_UNCHANGED), None

    def _classify_failure(
        self,
        directive: Directive,
        result: ActionResult,
        error_code: str
    ) -> Tuple[Outcome, str]:
        if result.timed_out:
            error_code = "timeout"

        if directive.failure_policy == FailurePolicy.CUSTOM_PREDICATE:
            fatal = directive.success_when.fatal
        else:
            fatal = directive.failure_policy == FailurePolicy.FATAL

        return (Outcome.FAILED_FATAL if fatal else Outcome.FAILED_IGNORED), error_code

    def _log_failure(self, directive: Directive, outcome: Outcome, message: str):
        if outcome == Outcome.FAILED_FATAL:
            logger.error(f"[{directive.id}] failed (fatal): {message}")
        else:
            logger.warning(f"[{directive.id}] failed (ignored): {message}")

    def _result(self, directive: Directive, outcome: Outcome, started: float, **kwargs) -> DirectiveResult:
        return DirectiveResult(
            directive_id=directive.id,
            label=directive.label,
            outcome=outcome,
            duration_ms=int((time.monotonic() - started) * 1000),
            **kwargs
        )

    # ==================== Handlers ====================

    def run_handler(
        self,
        handler: Handler,
        context: RunContext,
        notified_by: Sequence[str] = ()
    ) -> HandlerResult:
        """
        Fire one handler. Handler failures never rewind directive outcomes.

        Raises:
            ConnectionLost: If the host becomes unreachable
        """
        started = time.monotonic()

        def finish(outcome: Outcome, result: Optional[ActionResult] = None, **kwargs) -> HandlerResult:
            if result is not None:
                kwargs.setdefault("message", result.message)
                kwargs.setdefault("stdout", result.stdout)
                kwargs.setdefault("stderr", result.stderr)
                kwargs.setdefault("exit_code", result.exit_code)
            return HandlerResult(
                name=handler.name,
                outcome=outcome,
                notified_by=tuple(notified_by),
                duration_ms=int((time.monotonic() - started) * 1000),
                **kwargs
            )

        if self.dry_run:
            return finish(Outcome.SKIPPED, message="dry run")

        failed_outcome = (
            Outcome.FAILED_IGNORED if handler.failure_policy == FailurePolicy.IGNORED
            else Outcome.FAILED_FATAL
        )

        try:
            body = handler.render(context)
            action = build_action(body, self.connection, context, self._timeout(handler.timeout))
            if action.produces_file:
                proposal = action.propose()
                if proposal.changed:
                    staged = action.files.stage(
                        proposal.path, proposal.proposed, proposal.mode, proposal.owner, proposal.group
                    )
                    action.files.promote(staged, proposal.path)
                result = action.finish(proposal, written=proposal.changed, dry_run=False)
            else:
                result = action.apply(dry_run=False)
        except (RenderError, CommitFailed) as e:
            error = HandlerFailed(f"Handler '{handler.name}': {e.message}")
            return finish(failed_outcome, message=error.message, error_code=error.code, stderr=e.message)

        if result.failed:
            return finish(failed_outcome, result, error_code=HandlerFailed.code)

        outcome = Outcome.OK_CHANGED if result.changed else Outcome.OK_UNCHANGED
        return finish(outcome, result)
