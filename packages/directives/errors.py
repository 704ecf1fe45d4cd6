"""
Engine Error Taxonomy

Every failure the engine can report derives from EngineError so the Run
can convert it into a report entry instead of crashing.

Propagation:
- GuardSkipped: not an error, the directive is recorded as skipped
- RenderError: template/variable problem, raised before any host call
- ValidationFailed: pre-commit, the live file was never touched
- CommitFailed: the mutation itself failed, host may be partially changed
- HandlerFailed: post-run, never rewinds earlier directive outcomes
- ConnectionLost: host unreachable mid-run, always fatal
- RunCancelled: operator interrupt, honoured between directives
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def __init__(
        self,
        message: str,
        directive_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.directive_id = directive_id
        self.details = details or {}


class GuardSkipped(EngineError):
    """Raised internally when a directive guard evaluates to false."""

    code = "guard_skipped"


class RenderError(EngineError):
    """A template references an undefined variable or is malformed."""

    code = "render_error"


class ValidationFailed(EngineError):
    """Validator rejected a staged proposal. No live mutation occurred."""

    code = "validation_failed"


class CommitFailed(EngineError):
    """Failure while mutating the host."""

    code = "commit_failed"


class HandlerFailed(EngineError):
    """A handler action failed after the directive section completed."""

    code = "handler_failed"


class ConnectionLost(EngineError):
    """The host became unreachable."""

    code = "connection_lost"


class RunCancelled(EngineError):
    """The operator interrupted the run."""

    code = "cancelled"
