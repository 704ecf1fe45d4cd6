"""
Execution Planner Package

Resolves which directives a Run executes.

NOT a scheduler. The planner never reorders and never infers
dependencies; it only filters the declared list by tags:

    Target directives (declaration order)
        ↓
    TagFilter (exclude wins, include narrows)
        ↓
    ExecutionPlan.runnable (same relative order)
        ↓
    Directive Executor

Key Principle: ordering correctness is the operator's responsibility,
expressed by declaration order (create the user before writing its key).
"""

from .planner import (
    TagFilter,
    ExecutionPlan,
    ExecutionPlanner,
    PlanningError
)

__all__ = [
    "TagFilter",
    "ExecutionPlan",
    "ExecutionPlanner",
    "PlanningError"
]

__version__ = "1.0.0"
