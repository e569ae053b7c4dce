"""
Workflow types and the stock adjustment state machine.

Responsibility
--------------
Pure value objects for document lifecycles plus the one lifecycle the
kernel owns: ``draft -> approved -> posted``.  ``resolve_transition`` is
the single gate every state change passes through, and it runs before
any side effect.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* Approve is valid only from ``draft``; post only from ``approved``.
* ``posted`` is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass

from inventory_kernel.exceptions import InvalidTransitionError
from inventory_kernel.logging_config import get_logger

logger = get_logger("domain.workflow")


@dataclass(frozen=True)
class Guard:
    """A condition that must hold before a transition fires.

    Descriptive only; the owning service evaluates it.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition.  ``posts_entry=True`` writes ledger entries."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    posts_entry: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self):
        if self.initial_state not in self.states:
            raise ValueError(f"{self.name}: initial state {self.initial_state!r} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"{self.name}: transition {t.action!r} references unknown state"
                )

    def allowed_actions(self, state: str) -> tuple[str, ...]:
        return tuple(t.action for t in self.transitions if t.from_state == state)


def resolve_transition(workflow: Workflow, current_state: str, action: str) -> Transition:
    """
    Return the transition for ``action`` from ``current_state``.

    Raises:
        InvalidTransitionError: no such transition exists.
    """
    for t in workflow.transitions:
        if t.from_state == current_state and t.action == action:
            return t
    logger.warning(
        "invalid_transition_rejected",
        extra={
            "workflow": workflow.name,
            "current_state": current_state,
            "action": action,
        },
    )
    raise InvalidTransitionError(workflow.name, current_state, action)


# -----------------------------------------------------------------------------
# Stock adjustment workflow
# -----------------------------------------------------------------------------

LINES_BALANCE_OK = Guard(
    name="lines_balance_ok",
    description="Appending the adjustment lines keeps every lot-tracked balance non-negative",
)

ADJUSTMENT_WORKFLOW = Workflow(
    name="stock_adjustment",
    description="Manual stock correction: draft, approval, posting to the ledger",
    initial_state="draft",
    states=("draft", "approved", "posted"),
    transitions=(
        Transition("draft", "approved", action="approve"),
        Transition(
            "approved", "posted", action="post",
            guard=LINES_BALANCE_OK, posts_entry=True,
        ),
    ),
    terminal_states=("posted",),
)

logger.debug(
    "adjustment_workflow_defined",
    extra={
        "workflow": ADJUSTMENT_WORKFLOW.name,
        "states": list(ADJUSTMENT_WORKFLOW.states),
        "transitions": [t.action for t in ADJUSTMENT_WORKFLOW.transitions],
    },
)
