"""
Log record assembly.

Turns the active event (definition, overrides and handler field values)
plus the request context into the column values of an ActivityLog row.
Message templates are expanded field by field; each field's text goes
through the field info filter, so groups can format their own fields.
"""
import json
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

from activity_audit.config import AuditSettings
from activity_audit.context import RequestContext, UserDirectory, UserRecord
from activity_audit.hooks import HookName, HookRegistry
from activity_audit.models.log import ActivityLog
from activity_audit.services.flatten import (
    COUNTER_MARKER,
    append_update,
    flatten_data,
    is_ignored,
    join_message,
    replace_counter,
    to_text,
)
from activity_audit.services.state_machine import ActiveEvent

logger = logging.getLogger(__name__)

SPECIAL_MESSAGE_ARGS = (
    "_event_id", "_main", "_meta_key", "_meta_value",
    "_space_start", "_space_end", "_error_msg", "_user_avatar",
)
FIELD_CONTEXTS = ("new", "previous", "intended", "current", "requested")
FIELD_INFO_PRIORITY = 98
VOWELS = ("a", "e", "i", "o", "u")


def parse_value(value: Any) -> Any:
    """Scalar form of a field value as stored in the message column."""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        if all(not isinstance(v, (Mapping, list, tuple)) for v in value):
            return ", ".join(to_text(v) for v in value)
        return json.dumps(list(value), default=str)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), default=str)
    if isinstance(value, UserRecord):
        return value.login
    return value


def readable_field(field: str) -> str:
    text = field.replace("_", " ").replace("-", " ")
    return text[:1].upper() + text[1:]


def build_update_info(previous: Mapping[str, Any], current: Mapping[str, Any]) -> str:
    """
    Describe what changed between two snapshots, one line per field.
    Returns an empty string when nothing changed.
    """
    lines = []
    for key in current:
        before = previous.get(key)
        after = current.get(key)
        if to_text(parse_value(before)) == to_text(parse_value(after)):
            continue
        lines.append(f"{readable_field(key)}: {to_text(parse_value(before))} -> {to_text(parse_value(after))}")
    return "\n".join(lines)


def role_descriptor(roles: List[str]) -> str:
    if "super_admin" in roles:
        return "A Super Admin"
    if "administrator" in roles:
        return "An Administrator"
    descriptor = ""
    for role in roles:
        delimiter = "-" if "-" in role else "_"
        prefix = "An" if role[:1].lower() in VOWELS else "A"
        title = delimiter.join(part[:1].upper() + part[1:] for part in role.split(delimiter))
        descriptor = f"{prefix} {title}"
    return descriptor


class RecordAssembler:
    """Builds message text and record columns for the active event."""

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

    def attach(self) -> None:
        """Register the default message formatters."""
        self.hooks.add_filter(HookName.MAIN_MESSAGE, self.customize_main_message, 10, 3)
        self.hooks.add_filter(HookName.MESSAGE_FIELD_INFO, self.format_field_info, FIELD_INFO_PRIORITY, 5)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def lookup_user(self, user_id: int) -> Optional[UserRecord]:
        if user_id <= 0:
            return None
        if user_id == self.context.user.id:
            return self.context.user
        return self.users.get_user(user_id) if self.users else None

    def acting_user(self, active: ActiveEvent) -> UserRecord:
        """The session user, unless the handler named another acting user."""
        try:
            override = int(active.value("current_user_id") or 0)
        except (TypeError, ValueError):
            override = 0
        if override > 0:
            user = self.lookup_user(override)
            if user is not None:
                return user
        return self.context.user

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    def main_message(self, active: ActiveEvent) -> str:
        msg = active.overrides.get("message") or active.definition.message.get("_main", "")
        msg = to_text(msg)
        placeholders = active.value("_placeholder_values")
        if " (%s)" in msg and isinstance(placeholders, (list, tuple)) and placeholders:
            for value in placeholders:
                msg = msg.replace("%s", to_text(value), 1)
        return msg

    def customize_main_message(self, msg: str, group: str, active: ActiveEvent) -> str:
        """Prefix the message with a description of the acting user's role."""
        object_id = active.object_id
        if "(%s)" in msg and group == "user":
            target = self.lookup_user(object_id)
            if target is not None:
                msg = msg.replace("(%s)", f"---{target.login}---", 1)

        roles: List[str] = []
        if group == "user":
            user_id = self.context.user.id or object_id
            user = self.lookup_user(user_id)
            roles = list(user.roles) if user else []

        if not roles and not self.context.user.logged_in:
            return msg
        if not roles:
            roles = list(self.context.user.roles)

        descriptor = role_descriptor(roles)
        if not descriptor:
            return f"A user without a role {msg}"

        lowered = msg.lower()
        if lowered.startswith("a "):
            msg = msg[2:].strip()
        elif lowered.startswith("an "):
            msg = msg[3:].strip()
        if msg.lower().startswith("user "):
            msg = msg[4:].strip()

        return f"{descriptor} {msg[:1].lower()}{msg[1:]}"

    def format_field_info(self, info: str, group: str, field: str, context: str, active: ActiveEvent) -> str:
        if info != "":
            return info

        name = f"{field}_{context}" if context and f"{field}_{context}" in active.field_values else field
        data = parse_value(active.value(name))
        if is_ignored(data):
            return data

        if field == "object_id":
            label = active.definition.object_id_label
        else:
            label = readable_field(field)
        if context:
            label = f"{context[:1].upper()}{context[1:]} {label.lower()}"

        if data is None:
            data = "Null"
        return f"{label}: {to_text(data)}"

    def field_info(self, active: ActiveEvent, field: str, context: str = "") -> str:
        contextual = f"{field}_{context}" if context else field
        if field not in active.field_values and contextual not in active.field_values:
            return ""
        return self.hooks.apply_filters(
            HookName.MESSAGE_FIELD_INFO, "", active.group, field, context, active
        )

    def build_message(self, active: ActiveEvent) -> str:
        template = active.definition.message
        if not template:
            return ""

        args = self.hooks.apply_filters(HookName.MESSAGE_FIELDS, dict(template), active.group, active)
        fields: Dict[str, Any] = {}

        for name, spec in args.items():
            if is_ignored(spec):
                continue
            is_list = isinstance(spec, (list, tuple))

            if name.startswith("_"):
                if name == "_main":
                    info = self.hooks.apply_filters(
                        HookName.MAIN_MESSAGE, self.main_message(active), active.group, active
                    ).replace(" (%s)", "")
                elif name not in SPECIAL_MESSAGE_ARGS:
                    continue
                elif name.startswith("_space_"):
                    info = name
                elif name == "_error_msg":
                    info = active.value("_error_msg")
                    if not info:
                        continue
                elif is_list:
                    info = self.field_info(active, *spec)
                else:
                    continue
            elif is_list:
                info = self.field_info(active, *spec)
                if info == "":
                    continue
            elif name.startswith("meta_") or COUNTER_MARKER in to_text(spec):
                info = spec
            else:
                info = self.field_info(active, spec or name)
                if not info:
                    continue

            info = parse_value(info)
            if is_ignored(info):
                continue
            fields[name] = to_text(info)

        return join_message(fields)

    # ------------------------------------------------------------------
    # Record
    # ------------------------------------------------------------------

    def object_data(self, active: ActiveEvent) -> Dict[str, Any]:
        if active.get("object") == "user":
            target = self.lookup_user(active.object_id)
            if target is not None:
                return target.as_data()
            user_obj = active.value("user_obj")
            if isinstance(user_obj, UserRecord):
                return user_obj.as_data()
            if isinstance(user_obj, Mapping):
                return dict(user_obj)
            return {}
        data = active.value("object_data")
        return dict(data) if isinstance(data, Mapping) else {}

    def metadata(self) -> Dict[str, Any]:
        device = self.context.device
        server = self.context.server
        return {
            "user_agent": device.user_agent,
            "browser_version": device.browser_version,
            "platform_version": device.platform_version,
            "platform_is_64_bit": device.platform_is_64_bit,
            "platform_version_name": device.platform_version_name,
            "client_ips": list(self.context.client_ips),
            "remote_port": server.get("REMOTE_PORT", ""),
            "server_port": server.get("SERVER_PORT", ""),
            "request_uri": server.get("REQUEST_URI", ""),
            "query_string": server.get("QUERY_STRING", ""),
            "server_address": server.get("SERVER_ADDR", ""),
            "request_scheme": server.get("REQUEST_SCHEME", "").lower(),
            "request_method": self.context.request_method,
            "server_protocol": server.get("SERVER_PROTOCOL", ""),
        }

    def build_update(self, active: ActiveEvent, existing: ActivityLog, counter: int) -> Dict[str, Any]:
        """Columns recomputed when an occurrence increments an open record."""
        now = self.context.now()
        user = self.acting_user(active)
        return {
            "message": replace_counter(self.build_message(active), counter),
            "user_data": append_update(existing.user_data, flatten_data(user.as_data()), now),
            "object_data": append_update(existing.object_data, flatten_data(self.object_data(active)), now),
            "event_metadata": append_update(existing.event_metadata, flatten_data(self.metadata()), now),
            "log_counter": counter,
            "updated_at": now,
        }

    def build_insert(self, active: ActiveEvent) -> Dict[str, Any]:
        """All columns for a new record."""
        user = self.acting_user(active)
        device = self.context.device
        return {
            "event_id": active.event_id,
            "event_slug": active.slug,
            "blog_id": self.context.blog_id,
            "blog_name": self.context.blog_name or None,
            "blog_url": self.context.blog_url or None,
            "user_id": user.id,
            "object_id": active.object_id,
            "user_login": user.login,
            "user_role": ", ".join(user.roles),
            "first_name": user.first_name,
            "last_name": user.last_name,
            "severity": active.get("severity"),
            "event_group": active.group,
            "event_title": active.get("title"),
            "event_object": active.get("object"),
            "event_action": active.get("action"),
            "source_ip": self.context.client_ip or "0.0.0.0",
            "referer_url": self.context.referer if self.settings.log_referer else "",
            "browser": device.browser,
            "platform": device.platform,
            "is_robot": device.is_robot,
            "is_mobile": device.is_mobile,
            "message": replace_counter(self.build_message(active), 1),
            "user_data": flatten_data(user.as_data()),
            "object_data": flatten_data(self.object_data(active)),
            "event_metadata": flatten_data(self.metadata()),
            "new_content": to_text(parse_value(active.value("new_content"))),
            "previous_content": to_text(parse_value(active.value("previous_content"))),
            "log_counter": 1,
            "created_at": self.context.now(),
        }

    def ignorable_view(self, active: ActiveEvent, record: Dict[str, Any]) -> Dict[str, Any]:
        """Field values overlaid with record columns, as seen by ignorable conditions."""
        view = dict(active.field_values)
        view.update(record)
        view["object_id"] = active.object_id
        return view
