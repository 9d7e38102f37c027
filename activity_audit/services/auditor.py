"""
Request-scoped audit engine.

One Auditor is built per request. ``setup()`` registers and normalizes
the event catalog, attaches the pre-mutation observers and the event
handlers to the host hooks, and arranges for deferred events to be
replayed at the next redirect. Every occurrence then flows through

    handler -> setup_event_args -> log_active_event -> log

with the single active event slot owned by ActiveEventStateMachine.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from activity_audit.config import AuditSettings
from activity_audit.context import RequestContext, UserDirectory
from activity_audit.exceptions import PersistenceError, QueryConfigurationError
from activity_audit.hooks import HookName, HookRegistry
from activity_audit.models.enums import EventState, HandlerKind
from activity_audit.services.aggregation import AggregationPolicy
from activity_audit.services.assembler import RecordAssembler
from activity_audit.services.conditions import PredicateEvaluator
from activity_audit.services.registry import EventRegistry
from activity_audit.services.repository import ActivityLogRepository
from activity_audit.services.snapshots import SnapshotSources, SnapshotStore, attach_observers
from activity_audit.services.state_machine import ActiveEvent, ActiveEventStateMachine

logger = logging.getLogger(__name__)

# Returned by a handler to postpone its event until the next redirect
DEFER = object()

Handler = Callable[..., Any]


@dataclass
class HandlerEntry:
    group: str
    slug: str
    func: Handler


class HandlerTable:
    """
    Explicit map of event handlers to ``(group, slug)``.

    Handlers are called as ``func(audit, event, *hook_args)`` and fill the
    active event. Returning False drops the occurrence and returning DEFER
    queues it for replay; anything else logs it.
    """

    def __init__(self, group: str, field_formatter: Optional[Handler] = None):
        self.group = group
        self.field_formatter = field_formatter
        self._entries: Dict[str, HandlerEntry] = {}

    def on(self, slug: str):
        def decorator(func: Handler) -> Handler:
            self.register(slug, func)
            return func
        return decorator

    def register(self, slug: str, func: Handler) -> None:
        self._entries[slug] = HandlerEntry(self.group, slug, func)

    def get(self, slug: str) -> Optional[HandlerEntry]:
        return self._entries.get(slug)

    def __iter__(self):
        return iter(self._entries.values())

    def format_field_info(self, info: str, group: str, field: str, context: str, active: ActiveEvent) -> str:
        """Field info filter that only formats fields of this table's group."""
        if group != self.group or self.field_formatter is None:
            return info
        return self.field_formatter(info, field, context, active)


@dataclass
class DeferredEvent:
    group: str
    slug: str
    fields: Dict[str, Any] = field(default_factory=dict)


class Auditor:
    """Owns the engine components for one request."""

    def __init__(
        self,
        context: RequestContext,
        settings: AuditSettings,
        hooks: HookRegistry,
        repository: ActivityLogRepository,
        users: Optional[UserDirectory] = None,
        handlers: Iterable[HandlerTable] = (),
        snapshot_sources: Optional[SnapshotSources] = None,
    ):
        self.context = context
        self.settings = settings
        self.hooks = hooks
        self.repository = repository
        self.users = users
        self.handlers = list(handlers)
        self.snapshot_sources = snapshot_sources

        self.evaluator = PredicateEvaluator(context, settings, hooks, users)
        self.registry = EventRegistry(settings, hooks, self.evaluator)
        self.snapshots = SnapshotStore()
        self.assembler = RecordAssembler(context, settings, hooks, users)
        self.aggregation = AggregationPolicy(settings, self.registry, repository, context)
        self.machine = ActiveEventStateMachine()
        self.deferred: Dict[str, DeferredEvent] = {}

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self, *groups: Mapping[str, Mapping[str, Any]]) -> "Auditor":
        for group_map in groups:
            self.registry.register(group_map)
        self.registry.normalize()
        self.assembler.attach()
        for table in self.handlers:
            if table.field_formatter is not None:
                self.hooks.add_filter(HookName.MESSAGE_FIELD_INFO, table.format_field_info, 10, 5)

        if self.snapshot_sources is not None:
            attach_observers(self.hooks, self.snapshots, self.snapshot_sources)

        attached = 0
        for definition in self.registry.events():
            if definition.disabled:
                continue
            entry = self._handler_for(definition.group, definition.slug, definition.event_handler.callback)
            if entry is None:
                continue
            spec = definition.event_handler
            self.hooks.add_action(definition.hook_name, self._dispatcher(entry, spec.kind),
                                  spec.priority, spec.num_args)
            attached += 1

        if self.context.is_public:
            self.hooks.add_action(HookName.TEMPLATE_REDIRECT, self.replay_deferred)
        else:
            self.hooks.add_filter(HookName.WP_REDIRECT, self._replay_on_redirect, 10, 2)

        logger.debug("Attached %d event handlers", attached)
        return self

    def _handler_for(self, group: str, slug: str, callback) -> Optional[HandlerEntry]:
        for table in self.handlers:
            if table.group == group and table.get(slug) is not None:
                return table.get(slug)
        if callback is not None:
            return HandlerEntry(group, slug, callback)
        return None

    def _dispatcher(self, entry: HandlerEntry, kind: HandlerKind):
        def dispatch(*args):
            passthrough = args[0] if kind == HandlerKind.FILTER and args else None
            if self.machine.state in (EventState.PREPARING, EventState.READY):
                logger.debug("Skipping %s while another event is active", entry.slug)
                return passthrough

            event = self.setup_event_args(entry.group)
            try:
                outcome = entry.func(self, event, *args)
            except Exception as exc:
                self._contain(exc, "Handler for %s/%s failed", entry.group, entry.slug)
                return passthrough

            if outcome is DEFER:
                self.deferred[f"{entry.group}_{entry.slug}"] = DeferredEvent(
                    entry.group, entry.slug, dict(event.field_values)
                )
                self.machine.abandon()
            elif outcome is False:
                self.machine.abandon()
            else:
                self.log_active_event(entry.group, entry.slug)
            return passthrough
        return dispatch

    # ------------------------------------------------------------------
    # Occurrence pipeline
    # ------------------------------------------------------------------

    def setup_event_args(self, group: str, fields: Optional[Mapping[str, Any]] = None) -> ActiveEvent:
        """Open the active event slot with the group's base field values."""
        base = {
            "user_id": self.context.user.id,
            "object_id": 0,
            "blog_id": self.context.blog_id,
            "blog_name": self.context.blog_name,
            "blog_url": self.context.blog_url,
        }
        base.update(fields or {})
        return self.machine.begin(group, base)

    def _resolve(self, group: str, event_ref) -> Optional[int]:
        if isinstance(event_ref, str):
            event_id = self.registry.get_event_id_by_slug(event_ref, group)
            if event_id:
                return event_id
        definition = self.registry.get_by_id(event_ref)
        return definition.id if definition else None

    def log_active_event(self, group: str, event_ref) -> bool:
        """
        Resolve the prepared event by slug (or id) and log it.

        A ``meta_key`` field naming another event of the same group
        redirects the occurrence to that definition.
        """
        event = self.machine.current
        if event is None or self.machine.state != EventState.PREPARING:
            return False

        try:
            return self._log_prepared(event, group, event_ref)
        except Exception as exc:
            return self._contain(exc, "Failed to log %s event %r", group, event_ref)

    def _log_prepared(self, event: ActiveEvent, group: str, event_ref) -> bool:
        event_id = self._resolve(group, event_ref)
        if not event_id:
            logger.debug("No %s event registered for %r", group, event_ref)
            self.machine.abandon()
            return False

        meta_key = event.value("meta_key")
        if meta_key and isinstance(meta_key, str):
            meta_event_id = self.registry.get_event_id_by_slug(meta_key, group)
            if meta_event_id > 0:
                event_id = meta_event_id

        definition = self.registry.get_by_id(event_id)
        self.machine.resolve(definition, event_id, definition.slug)

        if definition.disabled:
            return self._finish(EventState.SUPPRESSED)

        loggable = self.hooks.apply_filters(
            HookName.ACTIVE_LOGGABLE, True, event_id, definition.slug, definition
        )
        if not loggable:
            return self._finish(EventState.SUPPRESSED)

        return self.log()

    def log(self) -> bool:
        """Write the ready event. Returns True when a row was inserted or updated."""
        event = self.machine.current
        if event is None or self.machine.state != EventState.READY:
            return False
        try:
            return self._save_log(event)
        except Exception as exc:
            return self._contain(exc, "Failed to log event %s", event.event_id)

    def _finish(self, outcome: EventState) -> bool:
        self.machine.finish(outcome)
        self.machine.reset()
        return outcome == EventState.LOGGED

    def _release(self) -> None:
        """Return the slot to idle from any state. A resolved event ends as FAILED."""
        state = self.machine.state
        if state == EventState.PREPARING:
            self.machine.abandon()
        elif state == EventState.READY:
            self._finish(EventState.FAILED)
        else:
            self.machine.reset()

    def _propagates(self, exc: Exception) -> bool:
        return self.settings.debug or isinstance(exc, QueryConfigurationError)

    def _contain(self, exc: Exception, msg: str, *args) -> bool:
        """
        Release the slot after an error on the occurrence path.

        Only query configuration errors, and any error in debug mode,
        reach the host dispatcher.
        """
        self._release()
        if self._propagates(exc):
            raise exc
        logger.exception(msg, *args)
        return False

    def _notify(self, name: str, *args) -> None:
        """Fire a post-write action. Listener errors never undo the write."""
        try:
            self.hooks.do_action(name, *args)
        except Exception as exc:
            if self._propagates(exc):
                raise
            logger.exception("Listener on %s failed", name)

    def _is_ignorable(self, event: ActiveEvent) -> bool:
        view = self.assembler.ignorable_view(event, {
            "event_id": event.event_id,
            "event_slug": event.slug,
            "user_id": self.assembler.acting_user(event).id,
            "user_login": self.assembler.acting_user(event).login,
            "severity": event.get("severity"),
            "source_ip": self.context.client_ip,
            "blog_id": self.context.blog_id,
            "site_name": self.context.blog_name,
        })
        ignorable = self.evaluator.is_ignorable(event.definition, view)
        return bool(self.hooks.apply_filters(
            HookName.LOG_IGNORABLE, ignorable, event.event_id, event.slug, event.definition, view
        ))

    def _save_log(self, event: ActiveEvent) -> bool:
        if "update_info" in event.field_values and not event.field_values["update_info"]:
            logger.debug("Event %s changed nothing, not logged", event.event_id)
            return self._finish(EventState.SUPPRESSED)

        if self._is_ignorable(event):
            return self._finish(EventState.SUPPRESSED)

        error: Optional[Exception] = None
        saved = None
        try:
            decision = self.aggregation.should_update_existing(event)
            if decision.update:
                values = self.assembler.build_update(event, decision.existing, decision.counter)
                if self.repository.update(decision.existing, values):
                    saved = decision.existing
            else:
                saved = self.repository.insert(self.assembler.build_insert(event))
        except SQLAlchemyError as exc:
            self.repository.db.rollback()
            logger.exception("Failed to log event %s", event.event_id)
            error = exc
        except Exception as exc:
            if self._propagates(exc):
                raise
            logger.exception("Failed to assemble event %s", event.event_id)
            error = exc

        if saved is not None:
            self._finish(EventState.LOGGED)
            self._notify(HookName.LOG_SAVED, saved, event)
            return True

        event_id = event.event_id
        self._finish(EventState.FAILED)
        self._notify(HookName.LOG_SAVE_FAILED, event_id, event, error)
        if self.settings.debug:
            raise PersistenceError(f"Could not save activity log for event {event_id}", event_id) from error
        return False

    # ------------------------------------------------------------------
    # Deferred events
    # ------------------------------------------------------------------

    def clear_deferred(self, group: str, slug: str) -> None:
        """Forget a deferred event because its success counterpart fired."""
        self.deferred.pop(f"{group}_{slug}", None)

    def replay_deferred(self, *args) -> None:
        """Log every deferred event once. The queue is emptied first."""
        pending = list(self.deferred.values())
        self.deferred.clear()
        for item in pending:
            if self.machine.state in (EventState.PREPARING, EventState.READY):
                logger.debug("Cannot replay %s while another event is active", item.slug)
                continue
            self.setup_event_args(item.group, item.fields)
            self.log_active_event(item.group, item.slug)

    def _replay_on_redirect(self, location, *args):
        self.replay_deferred()
        return location
