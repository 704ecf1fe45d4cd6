"""
Gate State Machine - Lifecycle of one staged artifact

State Flow:
    STAGED → VALIDATED → COMMITTED
       ↓         ↓
    REJECTED  DISCARDED
       (STAGED → DISCARDED on dry-run or cancellation)

Philosophy:
- A live file is only ever replaced from VALIDATED
- REJECTED / COMMITTED / DISCARDED are terminal
- Every transition is recorded, so a report can show how far a proposal got
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List


class GateState(Enum):
    """Staged artifact states."""
    STAGED = "staged"          # Proposal written next to the live file
    VALIDATED = "validated"    # Validator accepted the staged copy
    REJECTED = "rejected"      # Validator refused it; staged copy deleted
    COMMITTED = "committed"    # Renamed onto the live path
    DISCARDED = "discarded"    # Dropped without validation verdict or commit


class GateStateError(RuntimeError):
    """Raised on an illegal gate transition."""


VALID_TRANSITIONS = {
    GateState.STAGED: {
        GateState.VALIDATED,
        GateState.REJECTED,
        GateState.DISCARDED
    },
    GateState.VALIDATED: {
        GateState.COMMITTED,
        GateState.DISCARDED
    },
    GateState.REJECTED: set(),   # Terminal
    GateState.COMMITTED: set(),  # Terminal
    GateState.DISCARDED: set()   # Terminal
}


def can_transition(from_state: GateState, to_state: GateState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, set())


def is_terminal_state(state: GateState) -> bool:
    """Check if state is terminal (no outgoing transitions)."""
    return len(VALID_TRANSITIONS.get(state, set())) == 0


@dataclass
class GateLifecycle:
    """Current state plus transition history of one artifact."""
    state: GateState = GateState.STAGED
    history: List[Dict] = field(default_factory=list)

    def transition(self, to_state: GateState, reason: str = "") -> None:
        """
        Move to a new state.

        Raises:
            GateStateError: If the transition is not in VALID_TRANSITIONS
        """
        if not can_transition(self.state, to_state):
            raise GateStateError(
                f"Invalid gate transition: {self.state.value} → {to_state.value}"
            )

        self.history.append({
            "from": self.state.value,
            "to": to_state.value,
            "reason": reason,
            "timestamp": datetime.utcnow().isoformat()
        })
        self.state = to_state

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)
