"""
Exception hierarchy for the activity audit engine.

Only query construction problems are raised to callers unconditionally.
Everything else on the logging path is absorbed and reported through
hooks and the module loggers so the host dispatcher is never interrupted.
"""


class ActivityAuditError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class QueryConfigurationError(ActivityAuditError):
    """
    Raised when a repository query is built against an unknown column
    or with an unsupported operator. This is a programming error and is
    always fatal.
    """


class InvalidTransitionError(ActivityAuditError):
    """Raised when the active event is moved through an illegal state change."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move active event from {current} to {target}")


class PersistenceError(ActivityAuditError):
    """Wraps a database failure. Only surfaced when debug mode is on."""

    def __init__(self, message: str, event_id: int = 0):
        self.event_id = event_id
        super().__init__(message)
