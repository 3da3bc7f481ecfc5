"""State machine infrastructure for entities whose state is derived from data.

A CA's state is never stored: it is recomputed from the artifacts it holds.
The machine therefore guards an event against the transition table, runs the
mutation, then recomputes the state and checks it landed where the table says.

- Explicit Event enums for all transitions
- Transition tables mapping (State, Event) -> NewState
- Post-condition check on the recomputed state
- Observability (metrics + logging)
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Generic, TypeVar

from opentelemetry import metrics

from pki.errors import PKIError, StateInvariantError

logger = logging.getLogger(__name__)

# OpenTelemetry metrics for state transitions
meter = metrics.get_meter("pki.state_machines")

state_transitions_total = meter.create_counter(
    name="pki_state_transitions_total",
    description="Total state transitions",
    unit="1",
)


class InvalidTransitionError(PKIError):
    """Raised when an event is not allowed in the entity's current state."""

    def __init__(self, entity_id: str, current_state: str, event: str):
        self.entity_id = entity_id
        self.current_state = current_state
        self.event = event
        super().__init__(
            f"Invalid transition: {entity_id} in state {current_state} cannot handle event {event}"
        )


S = TypeVar("S", bound=Enum)
E = TypeVar("E", bound=Enum)
R = TypeVar("R")


class StateMachine(ABC, Generic[S, E]):
    """Base class for derived-state machines with explicit transition tables.

    Subclasses must define:
    - TRANSITIONS: dict mapping (State, Event) -> NewState
    - _get_state(): compute the current state from the entity
    - _get_entity_id(): identity for logging/metrics
    """

    TRANSITIONS: dict[tuple[S, E], S]

    @abstractmethod
    def _get_state(self) -> S:
        """Compute current state."""
        ...

    @abstractmethod
    def _get_entity_id(self) -> str:
        """Get entity ID for logging."""
        ...

    def guard(self, event: E) -> S:
        """Return the target state for an event, or raise if it is not allowed.

        Raises:
            InvalidTransitionError: If no transition defined for (state, event)
        """
        current_state = self._get_state()
        key = (current_state, event)
        if key not in self.TRANSITIONS:
            logger.warning(
                "invalid_transition_attempted",
                extra={
                    "entity_id": self._get_entity_id(),
                    "current_state": current_state.value,
                    "event": event.value,
                    "reason": "no_transition_defined",
                },
            )
            raise InvalidTransitionError(self._get_entity_id(), current_state.value, event.value)
        return self.TRANSITIONS[key]

    def transition(self, event: E, action: Callable[[], R]) -> R:
        """Run an action as a state transition.

        Args:
            event: The event triggering the transition
            action: The mutation to perform once the event is allowed

        Returns:
            Whatever the action returns

        Raises:
            InvalidTransitionError: If no transition defined for (state, event)
            StateInvariantError: If the recomputed state differs from the table's target
        """
        current_state = self._get_state()
        expected_state = self.guard(event)
        entity_id = self._get_entity_id()

        result = action()

        new_state = self._get_state()
        if new_state != expected_state:
            logger.error(
                "state_invariant_violated",
                extra={
                    "entity_id": entity_id,
                    "event": event.value,
                    "expected_state": expected_state.value,
                    "actual_state": new_state.value,
                },
            )
            raise StateInvariantError(
                f"{entity_id}: event {event.value} left state {new_state.value}, "
                f"expected {expected_state.value}"
            )

        # Observability
        logger.info(
            "state_transition",
            extra={
                "entity_id": entity_id,
                "from_state": current_state.value,
                "to_state": new_state.value,
                "event": event.value,
            },
        )

        state_transitions_total.add(
            1,
            {
                "entity_type": self.__class__.__name__,
                "from_state": current_state.value,
                "to_state": new_state.value,
                "event": event.value,
            },
        )

        return result

    def can_transition(self, event: E) -> bool:
        """Check if a transition is valid without executing it."""
        return (self._get_state(), event) in self.TRANSITIONS

    def get_valid_events(self) -> list[E]:
        """Get list of events valid from current state."""
        current_state = self._get_state()
        return [event for state, event in self.TRANSITIONS.keys() if state == current_state]
