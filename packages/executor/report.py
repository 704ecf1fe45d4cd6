"""
Run Report - Per-directive outcomes, final status and exit code

Owned exclusively by one Run; sealed (read-only) once the Run returns.

Status rule:
    failure  if any directive/handler is failed_fatal,
             or failed_ignored and not on the allow-list,
             or the run was cancelled / lost its connection / never started
    success  otherwise

Exit codes distinguish why a run failed so wrappers (CI, fleet scripts)
can react without parsing text.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple


class Outcome(str, Enum):
    """Definitive outcome of one directive or handler."""
    SKIPPED = "skipped"
    OK_UNCHANGED = "ok_unchanged"
    OK_CHANGED = "ok_changed"
    FAILED_IGNORED = "failed_ignored"
    FAILED_FATAL = "failed_fatal"

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.FAILED_IGNORED, Outcome.FAILED_FATAL)

    @property
    def is_ok(self) -> bool:
        return self in (Outcome.OK_UNCHANGED, Outcome.OK_CHANGED)


class ExitCode(IntEnum):
    SUCCESS = 0
    CONFIG_ERROR = 1
    VALIDATION_FAILED = 2
    DIRECTIVE_FAILED = 3
    HANDLER_FAILED = 4
    CONNECTION_LOST = 5
    CANCELLED = 130


EXIT_PRECEDENCE = (
    ExitCode.CONFIG_ERROR,
    ExitCode.VALIDATION_FAILED,
    ExitCode.CONNECTION_LOST,
    ExitCode.DIRECTIVE_FAILED,
    ExitCode.HANDLER_FAILED,
    ExitCode.CANCELLED
)


def worst_exit_code(codes: Iterable[ExitCode]) -> ExitCode:
    """Most severe code across several runs (fleet convergence)."""
    codes = set(codes)
    for code in EXIT_PRECEDENCE:
        if code in codes:
            return code
    return ExitCode.SUCCESS


class ReportSealedError(RuntimeError):
    """Raised when a sealed report is modified."""


@dataclass(frozen=True)
class DirectiveResult:
    """Outcome of one directive, with captured diagnostics."""
    directive_id: str
    outcome: Outcome
    label: str = ""
    message: str = ""
    error_code: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False
    notified: Tuple[str, ...] = ()
    gate: Optional[Dict[str, Any]] = None
    backup_path: Optional[str] = None
    duration_ms: int = 0

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.OK_CHANGED

    @property
    def is_fatal(self) -> bool:
        return self.outcome == Outcome.FAILED_FATAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.directive_id,
            "label": self.label,
            "outcome": self.outcome.value,
            "changed": self.changed,
            "message": self.message,
            "error_code": self.error_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "notified": list(self.notified),
            "gate": self.gate,
            "backup_path": self.backup_path,
            "duration_ms": self.duration_ms
        }


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of one handler firing."""
    name: str
    outcome: Outcome
    notified_by: Tuple[str, ...] = ()
    message: str = ""
    error_code: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "notified_by": list(self.notified_by),
            "message": self.message,
            "error_code": self.error_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms
        }


@dataclass
class RunReport:
    """Accumulated results of one Run."""
    target: str
    host: str
    dry_run: bool = False
    allowed_failures: FrozenSet[str] = frozenset()
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    results: List[DirectiveResult] = field(default_factory=list)
    handler_results: List[HandlerResult] = field(default_factory=list)
    omitted: List[Tuple[str, str]] = field(default_factory=list)
    not_run: List[str] = field(default_factory=list)
    unfired_handlers: List[str] = field(default_factory=list)

    config_error: Optional[str] = None
    connection_error: Optional[str] = None
    cancelled: bool = False

    _sealed: bool = field(default=False, repr=False)

    # ==================== Recording ====================

    def _check_open(self):
        if self._sealed:
            raise ReportSealedError(f"Run report for {self.host} is sealed")

    def record(self, result: DirectiveResult) -> None:
        self._check_open()
        self.results.append(result)

    def record_handler(self, result: HandlerResult) -> None:
        self._check_open()
        self.handler_results.append(result)

    def mark_not_run(self, directive_ids: List[str]) -> None:
        self._check_open()
        self.not_run.extend(directive_ids)

    def mark_unfired(self, names: List[str]) -> None:
        self._check_open()
        self.unfired_handlers.extend(names)

    def mark_cancelled(self) -> None:
        self._check_open()
        self.cancelled = True

    def mark_config_error(self, message: str) -> None:
        self._check_open()
        self.config_error = message

    def mark_connection_lost(self, message: str) -> None:
        self._check_open()
        self.connection_error = message

    def seal(self) -> None:
        if not self._sealed:
            self.finished_at = datetime.utcnow()
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    # ==================== Queries ====================

    @property
    def changed_count(self) -> int:
        return sum(1 for r in self.results if r.outcome == Outcome.OK_CHANGED)

    @property
    def skipped(self) -> List[str]:
        return [r.directive_id for r in self.results if r.outcome == Outcome.SKIPPED]

    @property
    def completed(self) -> List[str]:
        """Directives whose desired state is live on the host."""
        return [r.directive_id for r in self.results if r.outcome.is_ok]

    @property
    def first_fatal(self) -> Optional[DirectiveResult]:
        for result in self.results:
            if result.is_fatal:
                return result
        return None

    def outcome_of(self, directive_id: str) -> Optional[Outcome]:
        for result in self.results:
            if result.directive_id == directive_id:
                return result.outcome
        return None

    def _unexcused(self, outcome: Outcome, key: str) -> bool:
        if outcome == Outcome.FAILED_FATAL:
            return True
        return outcome == Outcome.FAILED_IGNORED and key not in self.allowed_failures

    @property
    def failed_directives(self) -> List[DirectiveResult]:
        return [r for r in self.results if self._unexcused(r.outcome, r.directive_id)]

    @property
    def failed_handlers(self) -> List[HandlerResult]:
        return [h for h in self.handler_results if self._unexcused(h.outcome, h.name)]

    @property
    def status(self) -> str:
        return "success" if self.exit_code() == ExitCode.SUCCESS else "failure"

    def exit_code(self) -> ExitCode:
        """
        Aggregate exit code.

        Precedence: config_error (nothing ran), validation_failed,
        connection_lost, directive_failed, handler_failed, cancelled.
        """
        if self.config_error is not None:
            return ExitCode.CONFIG_ERROR
        if any(r.error_code == "validation_failed" for r in self.results):
            return ExitCode.VALIDATION_FAILED
        if self.connection_error is not None or any(
            r.error_code == "connection_lost" for r in self.results
        ):
            return ExitCode.CONNECTION_LOST
        if self.failed_directives:
            return ExitCode.DIRECTIVE_FAILED
        if self.failed_handlers:
            return ExitCode.HANDLER_FAILED
        if self.cancelled:
            return ExitCode.CANCELLED
        return ExitCode.SUCCESS

    # ==================== Rendering ====================

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in Outcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def summary(self) -> str:
        """Human-readable summary: what is live and what is not yet applied."""
        code = self.exit_code()
        mode = " [dry-run]" if self.dry_run else ""
        lines = [
            f"Run '{self.target}' on {self.host}{mode}: "
            f"{self.status.upper()} (exit {int(code)} {code.name.lower()})"
        ]

        counts = self.counts()
        lines.append(
            "  " + "  ".join(f"{name}={count}" for name, count in counts.items())
        )

        if self.config_error:
            lines.append(f"Configuration error: {self.config_error}")
        if self.connection_error:
            lines.append(f"Connection lost: {self.connection_error}")

        fatal = self.first_fatal
        if fatal is not None:
            lines.append(f"First fatal directive: {fatal.directive_id} [{fatal.error_code}]")
            if fatal.message:
                lines.append(f"  {fatal.message}")
            diagnostic = fatal.stderr.strip() or fatal.stdout.strip()
            if diagnostic:
                lines.extend(f"  | {line}" for line in diagnostic.splitlines()[-20:])

        ignored = [r.directive_id for r in self.results if r.outcome == Outcome.FAILED_IGNORED]
        if ignored:
            allowed = [i for i in ignored if i in self.allowed_failures]
            lines.append(
                f"Ignored failures: {', '.join(ignored)}"
                + (f" (allowed: {', '.join(allowed)})" if allowed else "")
            )

        if self.completed:
            lines.append(f"Live: {', '.join(self.completed)}")
        if self.not_run:
            lines.append(f"Not yet applied: {', '.join(self.not_run)}")
        if self.skipped:
            lines.append(f"Skipped: {', '.join(self.skipped)}")

        for handler in self.handler_results:
            lines.append(f"Handler {handler.name}: {handler.outcome.value}"
                         + (f" ({handler.message})" if handler.message else ""))
        if self.unfired_handlers:
            lines.append(f"Handlers not fired: {', '.join(self.unfired_handlers)}")
        if self.cancelled:
            lines.append("Run was cancelled before completion")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        fatal = self.first_fatal
        return {
            "target": self.target,
            "host": self.host,
            "dry_run": self.dry_run,
            "status": self.status,
            "exit_code": int(self.exit_code()),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "counts": self.counts(),
            "changed_count": self.changed_count,
            "first_fatal": fatal.directive_id if fatal else None,
            "results": [r.to_dict() for r in self.results],
            "handlers": [h.to_dict() for h in self.handler_results],
            "omitted": [{"id": i, "reason": reason} for i, reason in self.omitted],
            "not_run": list(self.not_run),
            "unfired_handlers": list(self.unfired_handlers),
            "config_error": self.config_error,
            "connection_error": self.connection_error,
            "cancelled": self.cancelled
        }
