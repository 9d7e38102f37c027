"""
Typed event definitions.

Definitions are built once by the registry and never mutated afterwards.
Per-occurrence customisation goes through ActiveEvent overrides instead.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from activity_audit.models.enums import HandlerKind, Severity

# Condition families that come as ``<name>__in`` / ``<name>__not_in`` pairs
CONDITION_PAIRS = (
    "event_id", "event_slug", "client_ip", "page_error_code", "event_severity",
    "weekdays", "user_caps", "roles", "term_id", "term_slug", "term_name",
    "taxonomy", "taxonomy_id", "post_id", "post_name", "tag_id", "tag_slug",
    "post_parent", "post_status", "post_type", "attachment_id",
    "post_mime_type", "comment_id", "comment_status", "author_id",
)
MULTISITE_CONDITION_PAIRS = ("site_id", "site_name")


def default_condition_args(multisite: bool = False) -> Dict[str, Any]:
    args: Dict[str, Any] = {
        "can_enable": True,
        "screen": [],
        "pagenow": [],
        "user_state": "both",
        "logged_in_user_caps": [],
    }
    pairs = CONDITION_PAIRS + (MULTISITE_CONDITION_PAIRS if multisite else ())
    for name in pairs:
        args[f"{name}__in"] = []
        args[f"{name}__not_in"] = []
    return args


class EventConditions(BaseModel):
    """
    Named predicate parameters attached to a definition.

    The fixed conditions are declared fields; the ``__in``/``__not_in``
    pairs and any externally registered condition live in the model extras.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    can_enable: Any = True
    screen: Any = Field(default_factory=list)
    pagenow: Any = Field(default_factory=list)
    user_state: Any = "both"
    logged_in_user_caps: Any = Field(default_factory=list)

    def get(self, name: str) -> Tuple[Any, bool]:
        """Return ``(value, found)`` for a condition name."""
        if name in type(self).model_fields:
            return getattr(self, name), True
        extra = self.model_extra or {}
        if name in extra:
            return extra[name], True
        return None, False

    def names(self) -> List[str]:
        return list(type(self).model_fields) + list(self.model_extra or {})


class EventHandlerSpec(BaseModel):
    """How the definition's handler attaches to the host dispatcher."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: HandlerKind = HandlerKind.ACTION
    priority: int = 10
    num_args: int = 1
    callback: Optional[Callable] = None


class NotificationState(BaseModel):
    model_config = ConfigDict(frozen=True)

    sms: bool = True
    email: bool = True


Successor = Union[int, Tuple[str, str]]


class EventDefinition(BaseModel):
    """A registered, normalized auditable event."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: int
    slug: str
    group: str
    title: str = ""
    action: str = ""
    object: str = ""
    description: str = ""
    severity: str = "notice"
    object_id_label: str = "Object ID"
    message: Dict[str, Any] = Field(default_factory=dict)
    event_handler: EventHandlerSpec = Field(default_factory=EventHandlerSpec)
    error_flag: bool = False
    successor: Optional[Successor] = None
    aggregatable: bool = False
    conditions: EventConditions = Field(default_factory=EventConditions)
    disabled: bool = False
    notification: NotificationState = Field(default_factory=NotificationState)
    ignore_meta_fields: List[str] = Field(default_factory=list)
    bail_event_handler: Optional[Dict[str, str]] = None
    meta_key: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        value = str(v or "").strip().lower()
        if value not in {s.value for s in Severity}:
            return Severity.NOTICE.value
        return value

    @field_validator("successor", mode="before")
    @classmethod
    def coerce_successor(cls, v):
        if isinstance(v, list):
            return tuple(v[:2]) if len(v) > 1 else None
        return v

    @property
    def namespace(self) -> str:
        return f"{self.group}_{self.slug}"

    @property
    def hook_name(self) -> str:
        return self.slug

    def has_error_flag(self) -> bool:
        """Error events need a successor to know when a chain is closed."""
        if not self.error_flag:
            return False
        if isinstance(self.successor, tuple):
            return len(self.successor) > 1
        return isinstance(self.successor, int) and self.successor > 0


class EventGroup(BaseModel):
    """Group-level metadata used for aggregated summaries."""
    model_config = ConfigDict(frozen=True)

    name: str
    title: str = ""
    object: str = ""
    description: str = ""
    object_id_label: str = "Object ID"
