"""
Governance Package

Provides the Validation Gate: no proposal for a critical file reaches the
live path without first passing its validator.

Components:
- state_machine: GateState lifecycle with an explicit transition table
- validation_gate: stage / validate / commit / discard over a HostConnection

Philosophy:
- Gate = Judge (validates a staged copy), commit only from VALIDATED
- A rejected proposal leaves the live file byte-for-byte unchanged
- Every transition is recorded for the run report
"""

from .state_machine import (
    GateState,
    GateStateError,
    GateLifecycle,
    VALID_TRANSITIONS,
    can_transition,
    is_terminal_state
)

from .validation_gate import (
    ValidationGate,
    StagedArtifact,
    GateDecision,
    CommitResult,
    render_validator_command
)

__all__ = [
    # State machine
    "GateState",
    "GateStateError",
    "GateLifecycle",
    "VALID_TRANSITIONS",
    "can_transition",
    "is_terminal_state",

    # Gate
    "ValidationGate",
    "StagedArtifact",
    "GateDecision",
    "CommitResult",
    "render_validator_command"
]

__version__ = "1.0.0"
