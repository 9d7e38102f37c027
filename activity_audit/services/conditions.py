"""
Conditional predicates attached to event definitions.

Two disjoint phases use the same predicate table:

- Pre-check (at registration): every name in ``pre_check_names``. A failing
  check disables the definition for the whole request.
- Ignorable (per occurrence, after the log data is assembled): every
  other known condition. A failing predicate skips that occurrence only.

Each predicate result passes through a filter hook named after the
condition, so host code can override any single decision.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from activity_audit.config import AuditSettings
from activity_audit.context import RequestContext, UserDirectory
from activity_audit.hooks import HookName, HookRegistry
from activity_audit.models.definitions import EventDefinition, default_condition_args
from activity_audit.models.enums import ConditionPhase, UserState

logger = logging.getLogger(__name__)

PRE_CHECK_NAMES = [
    "screen",
    "pagenow",
    "can_enable",
    "user_state",
    "event_id__in",
    "event_id__not_in",
    "event_slug__in",
    "event_slug__not_in",
    "client_ip__in",
    "client_ip__not_in",
    "weekdays__in",
    "weekdays__not_in",
    "event_severity__in",
    "event_severity__not_in",
    "logged_in_user_caps",
]

# Log data key compared by the generic __in/__not_in predicates, when it
# differs from the condition family name.
PAIR_SOURCES = {
    "event_slug": "event_slug",
    "event_severity": "severity",
    "client_ip": "source_ip",
    "site_id": "blog_id",
    "site_name": "site_name",
}


@dataclass
class ConditionCheck:
    """What a predicate gets to look at."""
    event_id: int
    slug: str
    definition: EventDefinition
    log_data: Dict[str, Any] = field(default_factory=dict)


Predicate = Callable[[Any, ConditionCheck], bool]


def _as_list(value) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _matches(actual, allowed: List[Any]) -> bool:
    candidates = _as_list(actual)
    allowed_text = {str(a).lower() for a in allowed}
    return any(str(c).lower() in allowed_text for c in candidates)


class PredicateEvaluator:
    """Evaluates definition conditions against the current request."""

    def __init__(
        self,
        context: RequestContext,
        settings: AuditSettings,
        hooks: HookRegistry,
        users: Optional[UserDirectory] = None,
    ):
        self.context = context
        self.settings = settings
        self.hooks = hooks
        self.users = users
        self.defaults: Dict[str, Any] = default_condition_args(context.screen.is_multisite)
        self.pre_check_names: List[str] = list(PRE_CHECK_NAMES)
        self._predicates: Dict[str, Predicate] = {
            "screen": self._screen,
            "pagenow": self._pagenow,
            "can_enable": self._can_enable,
            "user_state": self._user_state,
            "logged_in_user_caps": self._logged_in_user_caps,
            "event_id__not_in": self._event_id_not_in,
            "weekdays__in": self._weekdays_in,
            "weekdays__not_in": self._weekdays_not_in,
            "user_caps__in": self._user_caps_in,
            "user_caps__not_in": self._user_caps_not_in,
        }

    # ------------------------------------------------------------------
    # Extension
    # ------------------------------------------------------------------

    def register_condition(
        self,
        name: str,
        default: Any = None,
        predicate: Optional[Predicate] = None,
        phase: ConditionPhase = ConditionPhase.IGNORABLE,
    ) -> None:
        """
        Add a condition. Its phase is whichever list it is registered into;
        a condition without a predicate only exists for its filter hook.
        """
        self.defaults.setdefault(name, default)
        if predicate is not None:
            self._predicates[name] = predicate
        if phase == ConditionPhase.PRE_CHECK and name not in self.pre_check_names:
            self.pre_check_names.append(name)

    @property
    def ignorable_names(self) -> List[str]:
        return [n for n in self.defaults if n not in self.pre_check_names]

    def predicate_for(self, name: str) -> Optional[Predicate]:
        if name in self._predicates:
            return self._predicates[name]
        for suffix, factory in (("__not_in", self._generic_not_in), ("__in", self._generic_in)):
            if name.endswith(suffix):
                return factory(name[: -len(suffix)])
        return None

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run(self, name: str, check: ConditionCheck) -> Optional[bool]:
        predicate = self.predicate_for(name)
        if predicate is None:
            return None
        value, found = check.definition.conditions.get(name)
        if not found:
            return True
        try:
            return bool(predicate(value, check))
        except Exception:
            logger.debug("Condition %s failed on event %s, treating as valid",
                         name, check.event_id, exc_info=True)
            return True

    def _base_log_data(self, log_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        data = {
            "user_id": self.context.user.id,
            "object_id": 0,
            "user_login": self.context.user.login,
        }
        if self.context.screen.is_multisite:
            data["blog_id"] = self.context.blog_id
            data["site_name"] = self.context.blog_name
        data.update(log_data or {})
        return data

    def is_valid(self, definition: EventDefinition, log_data: Optional[Dict[str, Any]] = None) -> bool:
        """Pre-check phase. AND over the pre-check names, first failure wins."""
        check = ConditionCheck(definition.id, definition.slug, definition, self._base_log_data(log_data))
        for name in self.pre_check_names:
            result = self._run(name, check)
            valid = self.hooks.apply_filters(
                HookName.condition(name),
                True if result is None else result,
                check.event_id, check.slug, check.definition, check.log_data,
            )
            if not valid:
                logger.debug("Event %s failed pre-check condition %s", definition.id, name)
                return False
        return True

    def is_ignorable(self, definition: EventDefinition, log_data: Dict[str, Any]) -> bool:
        """Ignorable phase. The first condition reporting ignorable wins."""
        check = ConditionCheck(definition.id, definition.slug, definition, log_data)
        for name in self.ignorable_names:
            result = self._run(name, check)
            ignorable = self.hooks.apply_filters(
                HookName.condition(name),
                False if result is None else not result,
                check.event_id, check.slug, check.definition, check.log_data,
            )
            if ignorable:
                logger.debug("Event %s ignored by condition %s", definition.id, name)
                return True
        return False

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def _screen(self, screens, check: ConditionCheck) -> bool:
        if self.context.doing_async:
            return True
        if not screens:
            return True

        flags = self.context.screen
        found = []
        site_type = ""
        for screen in _as_list(screens):
            if screen == "admin":
                found.append(flags.is_admin)
            elif screen == "user":
                found.append(flags.is_user_admin)
            elif screen in ("main_site", "mainsite"):
                found.append(flags.is_main_site)
            elif screen in ("network", "multisite"):
                # a network screen is only reachable on multisite
                if screen == "network":
                    found.append(flags.is_network_admin)
                found.append(flags.is_multisite)
                site_type = "multisite"
            elif screen in ("not-multisite", "not_multisite"):
                found.append(not flags.is_multisite)
                site_type = "not-multisite"
            elif screen == "public":
                found.append(not flags.is_admin and not flags.is_network_admin)

        if not any(found):
            return False
        if site_type == "multisite" and not flags.is_multisite:
            return False
        if site_type == "not-multisite" and flags.is_multisite:
            return False
        return True

    def _pagenow(self, pages, check: ConditionCheck) -> bool:
        if self.context.doing_async:
            return True
        pages = _as_list(pages)
        if not pages:
            return True
        return self.context.pagenow in pages

    def _can_enable(self, value, check: ConditionCheck) -> bool:
        return value is True

    def _user_state(self, state, check: ConditionCheck) -> bool:
        if not state or not isinstance(state, str):
            return False
        logged_in = self.context.user.logged_in
        if state == UserState.LOGGED_IN.value:
            return logged_in
        if state != UserState.BOTH.value:
            return not logged_in
        return True

    def _user_has_any_cap(self, user_id: int, caps) -> bool:
        if user_id == self.context.user.id:
            held = set(self.context.user.caps)
        else:
            user = self.users.get_user(user_id) if self.users else None
            held = set(user.caps) if user else set()
        return any(isinstance(cap, str) and cap in held for cap in caps)

    def _logged_in_user_caps(self, caps, check: ConditionCheck) -> bool:
        caps = _as_list(caps)
        if not caps:
            return True
        if self.context.user.id <= 0:
            return False
        return self._user_has_any_cap(self.context.user.id, caps)

    def _user_caps_in(self, caps, check: ConditionCheck) -> bool:
        caps = _as_list(caps)
        if not caps:
            return True
        object_id = int(check.log_data.get("object_id") or 0)
        if object_id <= 0:
            return False
        return self._user_has_any_cap(object_id, caps)

    def _user_caps_not_in(self, caps, check: ConditionCheck) -> bool:
        caps = _as_list(caps)
        if not caps:
            return True
        object_id = int(check.log_data.get("object_id") or 0)
        if object_id <= 0:
            return True
        return not self._user_has_any_cap(object_id, caps)

    def _event_id_not_in(self, ids, check: ConditionCheck) -> bool:
        excluded = check.event_id in self.settings.excluded_event_ids or check.event_id in _as_list(ids)
        disable = self.hooks.apply_filters(
            HookName.EVENT_DISABLE, excluded, check.event_id, check.slug, check.definition
        )
        return not disable

    def _weekday(self) -> List[str]:
        now = self.context.now()
        return [now.strftime("%A").lower(), now.strftime("%a").lower(), str(now.isoweekday())]

    def _weekdays_in(self, days, check: ConditionCheck) -> bool:
        days = _as_list(days)
        if not days:
            return True
        return _matches(self._weekday(), days)

    def _weekdays_not_in(self, days, check: ConditionCheck) -> bool:
        days = _as_list(days)
        if not days:
            return True
        return not _matches(self._weekday(), days)

    def _pair_value(self, family: str, check: ConditionCheck):
        """Return ``(value, found)`` for a generic __in/__not_in family."""
        if family == "event_id":
            return check.event_id, True
        if family == "event_slug":
            return check.slug, True
        if family == "event_severity":
            return check.definition.severity, True
        if family == "page_error_code":
            code = self.context.page_error_code
            return code, code is not None
        if family == "client_ip" and "source_ip" not in check.log_data:
            return self.context.client_ip, True
        key = PAIR_SOURCES.get(family, family)
        if key in check.log_data:
            return check.log_data[key], True
        return None, False

    def _generic_in(self, family: str) -> Predicate:
        def predicate(allowed, check: ConditionCheck) -> bool:
            allowed = _as_list(allowed)
            if not allowed:
                return True
            value, found = self._pair_value(family, check)
            if not found:
                return True
            return _matches(value, allowed)
        return predicate

    def _generic_not_in(self, family: str) -> Predicate:
        def predicate(excluded, check: ConditionCheck) -> bool:
            excluded = _as_list(excluded)
            if not excluded:
                return True
            value, found = self._pair_value(family, check)
            if not found:
                return True
            return not _matches(value, excluded)
        return predicate
