"""Enumerations for the activity audit domain."""
from enum import Enum


class Severity(str, Enum):
    """Severity levels an event definition may carry."""
    NOTICE = "notice"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"


class HandlerKind(str, Enum):
    """How an event handler is attached to the host dispatcher."""
    ACTION = "action"
    FILTER = "filter"
    CALLBACK = "callback"


class EventState(str, Enum):
    """Lifecycle of the single active event slot."""
    IDLE = "idle"
    PREPARING = "preparing"
    READY = "ready"
    LOGGED = "logged"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class ConditionPhase(str, Enum):
    """When a condition is evaluated."""
    PRE_CHECK = "pre_check"
    IGNORABLE = "ignorable"


class UserState(str, Enum):
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"
    BOTH = "both"
