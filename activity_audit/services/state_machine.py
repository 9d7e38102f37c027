"""
State machine for the active event slot.

All transitions of the single per-request active event go through here.
Only one event can be live at a time; the slot is reset before the next
occurrence is prepared.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from activity_audit.exceptions import InvalidTransitionError
from activity_audit.models.definitions import EventDefinition
from activity_audit.models.enums import EventState

logger = logging.getLogger(__name__)

TRANSITIONS = {
    EventState.IDLE: {EventState.PREPARING},
    EventState.PREPARING: {EventState.READY, EventState.IDLE},
    EventState.READY: {EventState.LOGGED, EventState.SUPPRESSED, EventState.FAILED},
    EventState.LOGGED: {EventState.IDLE},
    EventState.SUPPRESSED: {EventState.IDLE},
    EventState.FAILED: {EventState.IDLE},
}

TERMINAL_STATES = {EventState.LOGGED, EventState.SUPPRESSED, EventState.FAILED}

# Definition attributes a handler may override for one occurrence
OVERRIDABLE_FIELDS = {"message", "title", "severity", "action", "object", "object_id"}


@dataclass
class ActiveEvent:
    """The occurrence currently being prepared."""
    group: str
    field_values: Dict[str, Any] = field(default_factory=dict)
    definition: Optional[EventDefinition] = None
    event_id: int = 0
    slug: str = ""
    state: EventState = EventState.IDLE
    overrides: Dict[str, Any] = field(default_factory=dict)

    def override(self, name: str, value: Any) -> None:
        """Replace a definition attribute for this occurrence only."""
        if name not in OVERRIDABLE_FIELDS:
            raise KeyError(f"{name} cannot be overridden")
        self.overrides[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        """Override first, then the definition attribute."""
        if name in self.overrides:
            return self.overrides[name]
        if self.definition is not None and hasattr(self.definition, name):
            return getattr(self.definition, name)
        return default

    def value(self, name: str, default: Any = None) -> Any:
        return self.field_values.get(name, default)

    def update(self, values: Dict[str, Any] = None, **fields) -> "ActiveEvent":
        self.field_values.update(values or {}, **fields)
        return self

    @property
    def object_id(self) -> int:
        if "object_id" in self.overrides:
            value = self.overrides["object_id"]
        else:
            value = self.field_values.get("object_id", 0)
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0


class ActiveEventStateMachine:
    """Owns the single active event slot for one request."""

    def __init__(self):
        self.current: Optional[ActiveEvent] = None
        self.last_outcome: Optional[EventState] = None

    @property
    def state(self) -> EventState:
        return self.current.state if self.current else EventState.IDLE

    def _move(self, target: EventState) -> None:
        current = self.state
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        if self.current is not None:
            self.current.state = target

    def begin(self, group: str, field_values: Dict[str, Any]) -> ActiveEvent:
        """
        Idle -> Preparing.

        A slot left in a terminal state by the previous occurrence is
        released first.
        """
        if self.current is not None and self.current.state in TERMINAL_STATES:
            self.reset()
        if self.current is not None:
            raise InvalidTransitionError(self.state.value, EventState.PREPARING.value)
        self.current = ActiveEvent(group=group, field_values=dict(field_values))
        self._move(EventState.PREPARING)
        return self.current

    def resolve(self, definition: EventDefinition, event_id: int, slug: str) -> ActiveEvent:
        """Preparing -> Ready once the definition is known."""
        self.current.definition = definition
        self.current.event_id = event_id
        self.current.slug = slug
        self._move(EventState.READY)
        return self.current

    def abandon(self) -> None:
        """Preparing -> Idle when the occurrence cannot be resolved."""
        self._move(EventState.IDLE)
        self.current = None

    def finish(self, outcome: EventState) -> None:
        """Ready -> Logged | Suppressed | Failed."""
        self._move(outcome)
        self.last_outcome = outcome
        logger.debug("Event %s finished as %s",
                     self.current.event_id if self.current else 0, outcome.value)

    def reset(self) -> None:
        """Terminal -> Idle."""
        if self.current is None:
            return
        if self.current.state not in TERMINAL_STATES:
            raise InvalidTransitionError(self.state.value, EventState.IDLE.value)
        self._move(EventState.IDLE)
        self.current = None
