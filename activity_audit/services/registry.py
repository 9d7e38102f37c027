"""
Event definition registry.

Groups of raw event maps are registered by the host (or the bundled
catalog), then normalized exactly once into immutable EventDefinitions.
Normalization drops malformed entries, resolves the effective event id,
computes the disabled flag from the pre-check conditions and builds the
id and slug indexes.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError

from activity_audit.config import AuditSettings
from activity_audit.hooks import HookName, HookRegistry
from activity_audit.models.definitions import (
    EventConditions,
    EventDefinition,
    EventGroup,
    EventHandlerSpec,
    NotificationState,
)
from activity_audit.services.conditions import PredicateEvaluator

logger = logging.getLogger(__name__)

EVENT_DEFAULTS: Dict[str, Any] = {
    "title": "",
    "group": "",
    "action": "",
    "object": "",
    "message": {},
    "event_id": 0,
    "severity": "notice",
    "description": "",
    "object_id_label": "",
    "disable": False,
    "notification": {"sms": True, "email": True},
    "error_flag": False,
    "event_successor": None,
    "is_aggregatable": False,
    "ignore_meta_fields": [],
    "bail_event_handler": None,
    "meta_key": None,
}

HANDLER_DEFAULTS: Dict[str, Any] = {
    "hook": "action",
    "priority": 10,
    "num_args": 1,
    "callback": None,
}


def _is_event_valid(event: Mapping[str, Any]) -> bool:
    handler = event.get("event_handler")
    if not event.get("message") or not handler or not isinstance(handler, Mapping):
        return False
    callback = handler.get("callback")
    if callback is not None and not callable(callback):
        return False
    return True


def resolve_event_id(event: Mapping[str, Any]) -> int:
    """
    Effective id for a raw event map, or 0 when it is unusable.

    A message ``_event_id`` string of four or more characters takes
    precedence over ``event_id``. The result must be a positive int of at
    least four digits.
    """
    event_id = event.get("event_id")
    override = (event.get("message") or {}).get("_event_id")
    if isinstance(override, str) and len(override) >= 4:
        event_id = int(override) if override.isdigit() else override

    if isinstance(event_id, bool) or not isinstance(event_id, int):
        return 0
    if event_id <= 0 or len(str(event_id)) < 4:
        return 0
    return event_id


class EventRegistry:
    """Catalog of auditable events, keyed by id and by ``group_slug``."""

    def __init__(self, settings: AuditSettings, hooks: HookRegistry, evaluator: PredicateEvaluator):
        self.settings = settings
        self.hooks = hooks
        self.evaluator = evaluator
        self._raw_groups: Dict[str, Dict[str, Any]] = {}
        self._events: Dict[int, EventDefinition] = {}
        self._slugs: Dict[str, int] = {}
        self._group_ids: Dict[str, Dict[int, str]] = {}
        self._groups: Dict[str, EventGroup] = {}
        self._object_id_labels: Dict[str, str] = {}
        self._ignorable_meta_fields: Dict[str, str] = {}
        self._custom_handlers: Dict[str, Set[str]] = {}
        self.normalized = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, groups: Mapping[str, Mapping[str, Any]]) -> None:
        """Merge group maps into the pending catalog. Later keys replace earlier ones."""
        for key, group in groups.items():
            self._raw_groups[key] = dict(group)

    def normalize(self) -> None:
        """Build the immutable catalog. Runs once; later calls are no-ops."""
        if self.normalized:
            return
        raw_groups = self.hooks.apply_filters(HookName.EVENT_GROUPS, dict(self._raw_groups))
        for key, group_args in raw_groups.items():
            group = group_args.get("group") or key
            events = group_args.get("events") or {}
            if not events:
                continue
            label = group_args.get("object_id_label")
            if label:
                self._object_id_labels[group] = label
            else:
                self._object_id_labels.setdefault(group, "Object ID")
            self._create_events(group, events, group_args)
            self._aggregate_group(key, group_args)
        self.normalized = True
        logger.info("Registered %d events in %d groups", len(self._events), len(self._group_ids))

    def _aggregate_group(self, key: str, group_args: Mapping[str, Any]) -> None:
        title = group_args.get("title")
        group = group_args.get("group") or ""
        description = group_args.get("description")
        if not title or not group or not description:
            return
        self._groups[key] = EventGroup(
            name=group,
            title=title,
            object=group_args.get("object") or group,
            description=description,
            object_id_label=self._object_id_labels.get(group, "Object ID"),
        )

    def _create_events(self, group: str, events: Mapping[str, Any], group_args: Mapping[str, Any]) -> None:
        events = self.hooks.apply_filters(HookName.EVENT_GROUP, dict(events), group)

        for slug, event in events.items():
            if not isinstance(event, Mapping):
                continue

            if not _is_event_valid(event):
                logger.debug("Dropping malformed event %s/%s", group, slug)
                continue

            merged = {**EVENT_DEFAULTS, **self.evaluator.defaults, **event}
            merged["event_handler"] = {**HANDLER_DEFAULTS, **event["event_handler"]}
            if not merged["group"]:
                merged["group"] = group_args.get("group") or group
            if not merged["object"]:
                merged["object"] = group_args.get("object") or group

            event_id = resolve_event_id(merged)
            if not event_id:
                logger.debug("Dropping event %s/%s with invalid id %r", group, slug, merged.get("event_id"))
                continue

            try:
                definition = self._build(event_id, slug, merged)
            except ValidationError:
                logger.debug("Dropping event %s/%s that failed validation", group, slug, exc_info=True)
                continue

            disabled = bool(merged["disable"])
            disabled = self.hooks.apply_filters(
                HookName.EVENT_DISABLED_PRE, disabled, event_id, slug, definition
            )
            if not disabled and not self.evaluator.is_valid(definition):
                disabled = True

            if not disabled:
                self._collect_ignorable_meta_fields(event_id, definition.ignore_meta_fields)
                self._collect_custom_handler(definition.bail_event_handler)

            definition = definition.model_copy(update={
                "disabled": bool(disabled),
                "notification": self._notification_state(event_id, merged["notification"]),
            })

            # First registration wins everywhere. A dropped duplicate has still
            # run its pre-check filters and contributed its ignorable meta fields
            # and custom handler, and its slug keeps pointing at the first id.
            self._events.setdefault(event_id, definition)
            self._slugs.setdefault(f"{group}_{slug}", event_id)
            self._group_ids.setdefault(group, {}).setdefault(event_id, slug)

        self.hooks.do_action(HookName.EVENT_GROUP_REGISTER, group, self._group_ids.get(group, {}))

    def _build(self, event_id: int, slug: str, merged: Mapping[str, Any]) -> EventDefinition:
        handler = merged["event_handler"]
        condition_args = {name: merged[name] for name in self.evaluator.defaults if name in merged}
        return EventDefinition(
            id=event_id,
            slug=slug,
            group=merged["group"],
            title=merged["title"],
            action=merged["action"],
            object=merged["object"],
            description=merged["description"],
            severity=merged["severity"],
            object_id_label=merged["object_id_label"] or self._object_id_labels.get(merged["group"], "Object ID"),
            message=dict(merged["message"]),
            event_handler=EventHandlerSpec(
                kind=handler["hook"],
                priority=handler["priority"],
                num_args=handler["num_args"],
                callback=handler["callback"],
            ),
            error_flag=bool(merged["error_flag"]),
            successor=merged["event_successor"],
            aggregatable=bool(merged["is_aggregatable"]),
            conditions=EventConditions(**condition_args),
            ignore_meta_fields=list(merged["ignore_meta_fields"] or []),
            bail_event_handler=merged["bail_event_handler"],
            meta_key=merged["meta_key"],
        )

    def _notification_state(self, event_id: int, configured) -> NotificationState:
        state = dict(configured) if isinstance(configured, Mapping) else {"sms": bool(configured), "email": bool(configured)}
        if event_id in self.settings.notification_excluded_sms:
            state["sms"] = False
        if event_id in self.settings.notification_excluded_email:
            state["email"] = False
        return NotificationState(**state)

    def _collect_ignorable_meta_fields(self, event_id: int, fields: Iterable[str]) -> None:
        for meta_field in fields:
            self._ignorable_meta_fields.setdefault(f"{event_id}_{meta_field}", meta_field)

    def _collect_custom_handler(self, handler: Optional[Mapping[str, str]]) -> None:
        if not handler or not isinstance(handler, Mapping):
            return
        event_type = handler.get("event_type")
        event_group = handler.get("event_group")
        if not isinstance(event_type, str) or not isinstance(event_group, str):
            return
        if not event_type or not event_group:
            return
        self._custom_handlers.setdefault(event_group, set()).add(event_type)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, event_id) -> Optional[EventDefinition]:
        try:
            return self._events.get(int(event_id))
        except (TypeError, ValueError):
            return None

    def get_event_id_by_slug(self, slug: str, group: str = "") -> int:
        namespace = f"{group}_{slug}".lstrip("_")
        return self._slugs.get(namespace, 0)

    def get_event_slug_by_id(self, event_id, default: str = "") -> str:
        definition = self.get_by_id(event_id)
        return definition.slug if definition else default

    def events(self, group: Optional[str] = None) -> List[EventDefinition]:
        if group is None:
            return list(self._events.values())
        return [self._events[i] for i in self._group_ids.get(group, {})]

    def groups(self) -> Dict[str, EventGroup]:
        return dict(self._groups)

    def object_id_label(self, group: str) -> str:
        return self._object_id_labels.get(group, "Object ID")

    def is_meta_field_ignorable(self, event_id: int, meta_field: str) -> bool:
        """Meta fields listed in ignore_meta_fields are dropped unless verbose logging is on."""
        if self.settings.verbose_logging:
            return False
        return f"{event_id}_{meta_field}" in self._ignorable_meta_fields

    def can_bail_with_custom_handler(self, group: str, event_type) -> bool:
        """True when a custom handler already logs ``event_type`` for the group."""
        if not event_type or not isinstance(event_type, str):
            return False
        return event_type in self._custom_handlers.get(group, set())

    def __len__(self) -> int:
        return len(self._events)
