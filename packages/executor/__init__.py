"""
Host Convergence Executor

Philosophy: converge, don't script.

NOT a shell script runner. Every directive re-checks live state and only
mutates when the host differs from the declaration:
- Sequential execution in declaration order, one host connection per Run
- Risky file edits pass the Validation Gate before they go live
- First fatal failure aborts; earlier effects stay (re-run to recover)
- Handlers fire once, at the end, only if something changed

Architecture:
    TargetSpec → ExecutionPlanner (tag filter)
        ↓
    Run → DirectiveExecutor ─→ actions ─→ HostConnection
        ↓            ↘ ValidationGate (stage → validate → commit)
    HandlerQueue (deduplicated, fire once)
        ↓
    RunReport → ExitCode

Key Principle: idempotent re-run is the recovery mechanism, not
transactional undo.
"""

from directives.errors import (
    EngineError,
    GuardSkipped,
    RenderError,
    ValidationFailed,
    CommitFailed,
    HandlerFailed,
    ConnectionLost,
    RunCancelled
)

from .config import EngineConfig

from .actions import (
    Action,
    ActionResult,
    FileProposal,
    build_action,
    apply_line_rules
)

from .executor import DirectiveExecutor

from .handlers import HandlerQueue

from .report import (
    Outcome,
    ExitCode,
    DirectiveResult,
    HandlerResult,
    RunReport,
    ReportSealedError,
    worst_exit_code
)

from .run import Run

from .facts import gather_facts

from .fleet import (
    HostLaneQueue,
    converge_hosts,
    converge_hosts_async
)

__all__ = [
    # Errors
    "EngineError",
    "GuardSkipped",
    "RenderError",
    "ValidationFailed",
    "CommitFailed",
    "HandlerFailed",
    "ConnectionLost",
    "RunCancelled",

    # Configuration
    "EngineConfig",

    # Actions
    "Action",
    "ActionResult",
    "FileProposal",
    "build_action",
    "apply_line_rules",

    # Core Executor
    "DirectiveExecutor",
    "HandlerQueue",
    "Run",
    "gather_facts",

    # Report
    "Outcome",
    "ExitCode",
    "DirectiveResult",
    "HandlerResult",
    "RunReport",
    "ReportSealedError",
    "worst_exit_code",

    # Fleet
    "HostLaneQueue",
    "converge_hosts",
    "converge_hosts_async"
]

__version__ = "1.0.0"
