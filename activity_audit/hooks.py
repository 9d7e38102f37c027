"""
In-process hook dispatch.

The host application fires named actions and filters; the audit engine
both listens on them (event handlers, pre-mutation observers) and
exposes its own extension points through them. Callbacks run in
ascending priority order, ties broken by registration order.
"""
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

DEFAULT_PRIORITY = 10


@dataclass
class HookCallback:
    func: Callable
    priority: int = DEFAULT_PRIORITY
    accepted_args: Optional[int] = None
    seq: int = field(default=0, compare=False)

    def __call__(self, *args):
        if self.accepted_args is not None:
            args = args[: self.accepted_args]
        return self.func(*args)


class HookRegistry:
    """Named filters and actions with priority ordering."""

    def __init__(self):
        self._hooks: Dict[str, List[HookCallback]] = defaultdict(list)
        self._counter = itertools.count()

    def add_filter(
        self,
        name: str,
        func: Callable,
        priority: int = DEFAULT_PRIORITY,
        accepted_args: Optional[int] = None,
    ) -> HookCallback:
        callback = HookCallback(func, priority, accepted_args, next(self._counter))
        self._hooks[name].append(callback)
        return callback

    # Actions and filters share one table; only the return value differs.
    add_action = add_filter

    def remove_hook(self, name: str, func: Callable) -> bool:
        callbacks = self._hooks.get(name, [])
        for callback in callbacks:
            if callback.func == func:
                callbacks.remove(callback)
                return True
        return False

    def has_hook(self, name: str) -> bool:
        return bool(self._hooks.get(name))

    def callbacks(self, name: str) -> List[HookCallback]:
        return sorted(self._hooks.get(name, []), key=lambda c: (c.priority, c.seq))

    def apply_filters(self, name: str, value: Any, *args) -> Any:
        for callback in self.callbacks(name):
            value = callback(value, *args)
        return value

    def do_action(self, name: str, *args) -> None:
        for callback in self.callbacks(name):
            callback(*args)


class HookName:
    """Extension points fired by the engine."""
    # Registration
    EVENT_GROUPS = "audit.event_groups"
    EVENT_GROUP = "audit.event_group"
    EVENT_GROUP_REGISTER = "audit.event_group_register"
    EVENT_DISABLED_PRE = "audit.event_disabled_pre"
    EVENT_DISABLE = "audit.event_disable"

    # Per occurrence
    LOG_IGNORABLE = "audit.event_log_ignorable"
    ACTIVE_LOGGABLE = "audit.event_active_loggable"
    MESSAGE_FIELDS = "audit.event_message_fields"
    MESSAGE_FIELD_INFO = "audit.event_message_field_info"
    MAIN_MESSAGE = "audit.event_main_message"

    # Rendering
    MESSAGE_DISPLAY = "audit.event_message_display"
    MAIN_MESSAGE_DISPLAY = "audit.event_main_message_display"

    # Persistence
    LOG_SAVED = "audit.event_log_saved"
    LOG_SAVE_FAILED = "audit.event_log_save_failed"

    # Condition filters are named after the condition itself
    CONDITION_PREFIX = "audit.condition."

    # Host dispatch points used to replay deferred events
    TEMPLATE_REDIRECT = "template_redirect"
    WP_REDIRECT = "wp_redirect"

    @classmethod
    def condition(cls, name: str) -> str:
        return f"{cls.CONDITION_PREFIX}{name}"
