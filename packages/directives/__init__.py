"""
Directive Model Package

Declarative, idempotent configuration actions and the immutable context
they are rendered against.

Components:
- models: Directive, Handler, action bodies, policies
- rendering: RunContext, template rendering, guard evaluation
- loader: YAML target specification -> TargetSpec
- errors: engine error taxonomy

Philosophy:
- Directives are pure data; nothing here touches a host
- Context is resolved once per run and never mutated
- Declaration order is execution order
"""

from .errors import (
    EngineError,
    GuardSkipped,
    RenderError,
    ValidationFailed,
    CommitFailed,
    HandlerFailed,
    ConnectionLost,
    RunCancelled
)

from .models import (
    RiskClass,
    FailurePolicy,
    ChangePolicy,
    SuccessPredicate,
    CommandBody,
    ProbeBody,
    FileBody,
    LineRule,
    LineInFileBody,
    SysctlBody,
    ServiceBody,
    PackageBody,
    UserBody,
    AssertBody,
    ActionBody,
    ConcreteAction,
    Directive,
    Handler,
    body_produces_file
)

from .rendering import (
    RunContext,
    evaluate_guard,
    render_string
)

from .loader import (
    TargetSpec,
    TargetLoadError,
    load_target,
    parse_target
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

    # Policies
    "RiskClass",
    "FailurePolicy",
    "ChangePolicy",
    "SuccessPredicate",

    # Action bodies
    "CommandBody",
    "ProbeBody",
    "FileBody",
    "LineRule",
    "LineInFileBody",
    "SysctlBody",
    "ServiceBody",
    "PackageBody",
    "UserBody",
    "AssertBody",
    "ActionBody",
    "ConcreteAction",
    "body_produces_file",

    # Models
    "Directive",
    "Handler",

    # Rendering
    "RunContext",
    "evaluate_guard",
    "render_string",

    # Loading
    "TargetSpec",
    "TargetLoadError",
    "load_target",
    "parse_target"
]

__version__ = "1.0.0"
