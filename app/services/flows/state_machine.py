"""Explicit transition tables for the per-conversation dialog flows.

Flow states live in bot turn metadata; ``None`` is the terminal state
(no pending flow). Each flow declares which moves are legal and routes
every state change through ``FlowStateMachine.transition``.
"""

from enum import Enum
from typing import Dict, FrozenSet, Generic, Optional, TypeVar

S = TypeVar("S", bound=Enum)


class InvalidTransitionError(Exception):
    def __init__(self, flow: str, from_state: Optional[Enum], to_state: Optional[Enum]):
        self.flow = flow
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid {flow} transition: {_label(from_state)} -> {_label(to_state)}")


def _label(state: Optional[Enum]) -> str:
    return "none" if state is None else str(state.value)


class FlowStateMachine(Generic[S]):
    def __init__(self, name: str, transitions: Dict[Optional[S], FrozenSet[Optional[S]]]):
        self.name = name
        self.transitions = transitions

    def can_transition(self, from_state: Optional[S], to_state: Optional[S]) -> bool:
        return to_state in self.transitions.get(from_state, frozenset())

    def transition(self, from_state: Optional[S], to_state: Optional[S]) -> Optional[S]:
        """Return ``to_state`` or raise InvalidTransitionError."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(self.name, from_state, to_state)
        return to_state

    def parse(self, value: object, states: type) -> Optional[S]:
        """Read a persisted state value; anything unknown reads as terminal."""
        if isinstance(value, str):
            try:
                return states(value)
            except ValueError:
                return None
        return None
