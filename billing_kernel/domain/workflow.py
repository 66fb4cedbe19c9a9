"""
Canonical workflow types (``billing_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for document state machines.  Used by invoices,
estimates and recurring templates so that Guard, Transition and Workflow
are defined once.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass

from billing_kernel.exceptions import IllegalTransitionError


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.  The module evaluating the
    transition checks the condition and raises ``ValidationError`` carrying
    ``guard.name`` when it does not hold.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow.

    ``to_state`` of ``None`` marks a self-transition that keeps the current
    state (e.g. resending an invoice).
    """
    from_state: str
    to_state: str | None
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(
                f"initial_state '{self.initial_state}' not in states of {self.name}"
            )
        for t in self.transitions:
            if t.from_state not in self.states:
                raise ValueError(f"Unknown from_state '{t.from_state}' in {self.name}")
            if t.to_state is not None and t.to_state not in self.states:
                raise ValueError(f"Unknown to_state '{t.to_state}' in {self.name}")
            if t.from_state in self.terminal_states:
                raise ValueError(
                    f"Terminal state '{t.from_state}' has outgoing transition in {self.name}"
                )

    def actions_from(self, state: str) -> tuple[str, ...]:
        """Actions available from ``state``, in declaration order."""
        seen: list[str] = []
        for t in self.transitions:
            if t.from_state == state and t.action not in seen:
                seen.append(t.action)
        return tuple(seen)

    def can(self, state: str, action: str) -> bool:
        return any(
            t.from_state == state and t.action == action for t in self.transitions
        )

    def find(self, state: str, action: str, to_state: str | None = None) -> Transition | None:
        """Find the transition for ``action`` from ``state`` (optionally to ``to_state``)."""
        for t in self.transitions:
            if t.from_state != state or t.action != action:
                continue
            if to_state is None or t.to_state == to_state:
                return t
        return None

    def require(
        self,
        state: str,
        action: str,
        *,
        document_type: str,
        document_id: str,
        to_state: str | None = None,
    ) -> Transition:
        """Return the transition or raise ``IllegalTransitionError``."""
        transition = self.find(state, action, to_state)
        if transition is None:
            raise IllegalTransitionError(
                document_type=document_type,
                document_id=document_id,
                status=state,
                action=action,
            )
        return transition
