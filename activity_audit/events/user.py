"""
Bundled catalog for the ``user`` group.

Event maps use the same raw shape hosts register: condition arguments
sit next to the event attributes and the registry fills in defaults.
Handlers receive ``(audit, event, *hook_args)`` and fill the active
event's field values.
"""
from typing import Any, Dict, Optional

from activity_audit.context import RequestContext, UserRecord
from activity_audit.services.assembler import build_update_info, parse_value
from activity_audit.services.auditor import DEFER, HandlerTable
from activity_audit.services.flatten import COUNTER_MARKER, to_text

# Column-backed user fields and their labels
USER_TABLE_FIELDS = {
    "user_login": "User login",
    "user_email": "User email",
    "display_name": "Display name",
    "first_name": "First name",
    "last_name": "Last name",
    "nickname": "Nickname",
    "roles": "Roles",
}

# Profile fields compared by the profile update event
PROFILE_FIELDS = ("user_email", "display_name", "first_name", "last_name", "nickname")

USER_SUMMARY = {
    "user_id": ["object_id"],
    "user_login": ["user_login"],
    "display_name": ["display_name"],
    "roles": ["roles"],
    "first_name": ["first_name"],
    "last_name": ["last_name"],
    "user_email": ["user_email"],
    "profile_url": ["profile_url"],
}

FAILED_ATTEMPTS = f"Failed attempts: {COUNTER_MARKER}"

UPDATED_USER_META_MESSAGE = {
    "_main": "Updated a custom field on a user profile.",
    "_space_start": "",
    "meta_key": ["meta_key"],
    "meta_value_previous": ["meta_value", "previous"],
    "meta_value": ["meta_value", "new"],
    "_space_end": "",
    **USER_SUMMARY,
    "is_user_owner_of_account": ["is_user_owner_of_account"],
}

# Well known custom fields logged under their own event id
CUSTOM_USER_FIELDS = {
    "nickname": {"_event_id": "5013", "_title": "Nickname"},
    "last_name": {"_event_id": "5014", "_title": "Last name"},
    "first_name": {"_event_id": "5015", "_title": "First name"},
}


def _custom_field_events() -> Dict[str, Dict[str, Any]]:
    events = {}
    for meta_key, field_args in CUSTOM_USER_FIELDS.items():
        events[meta_key] = {
            "title": f"User {field_args['_title'].lower()} updated",
            "action": "modified",
            "severity": "notice",
            "user_state": "logged_in",
            "message": {**UPDATED_USER_META_MESSAGE, "_event_id": field_args["_event_id"]},
            "event_handler": {"num_args": 4},
        }
    return events


USER_EVENTS = {
    "users": {
        "title": "User Events",
        "group": "user",
        "object": "user",
        "object_id_label": "User ID",
        "description": "Responsible for logging all user related activities.",
        "events": {
            "updated_user_meta": {
                "title": "User profile updated",
                "action": "modified",
                "event_id": 5008,
                "severity": "notice",
                "user_state": "logged_in",
                "ignore_meta_fields": ["session_tokens", "wp_user-settings-time"],
                "message": UPDATED_USER_META_MESSAGE,
                "event_handler": {"num_args": 4},
            },
            **_custom_field_events(),
            "profile_update": {
                "title": "User profile updated",
                "action": "modified",
                "event_id": 5031,
                "severity": "notice",
                "user_state": "logged_in",
                "message": {
                    "_main": "Updated the profile of (%s). See the changes below:",
                    "_space_start": "",
                    "user_profile_data": ["update_info"],
                    "_space_end": "",
                    **USER_SUMMARY,
                },
                "event_handler": {"num_args": 2},
            },
            "wp_login_failed": {
                "title": "User login failed",
                "action": "login_failed",
                "event_id": 5046,
                "severity": "critical",
                "error_flag": True,
                "event_successor": ["user", "wp_login"],
                "message": {
                    "_main": "User login failed.",
                    "_space_start": "",
                    "failed_attempts": FAILED_ATTEMPTS,
                    "login_url": ["login_url"],
                    "_error_msg": "",
                    "_space_end": "",
                    **USER_SUMMARY,
                },
                "event_handler": {"num_args": 2},
            },
            "wp_login": {
                "title": "User logged in",
                "action": "logged_in",
                "event_id": 5047,
                "severity": "notice",
                "message": {
                    "_main": "User logged in successfully.",
                    "_space_start": "",
                    "login_url": ["login_url"],
                    "_space_end": "",
                    **USER_SUMMARY,
                },
                "event_handler": {"num_args": 2},
            },
            "wp_logout": {
                "title": "User logged out",
                "action": "logged_out",
                "event_id": 5048,
                "severity": "notice",
                "message": {"_main": "User logged out successfully.", **USER_SUMMARY},
                "event_handler": {"num_args": 1},
            },
            "can_add_user_to_blog": {
                "title": "User cannot be added to site",
                "action": "add",
                "event_id": 5053,
                "severity": "critical",
                "screen": ["multisite"],
                "user_state": "logged_in",
                "error_flag": True,
                "event_successor": ["user", "add_user_to_blog"],
                "message": {
                    "_main": "Tried to add a user to a site but the operation was unsuccessful.",
                    "_space_start": "",
                    "failed_attempts": FAILED_ATTEMPTS,
                    "blog_id": ["blog_id"],
                    "blog_name": ["blog_name"],
                    "role_given": ["role_given"],
                    "_error_msg": "",
                    "_space_end": "",
                    **USER_SUMMARY,
                },
                "event_handler": {"hook": "filter", "num_args": 4},
            },
            "add_user_to_blog": {
                "title": "User added to a site",
                "action": "added",
                "event_id": 5154,
                "severity": "critical",
                "screen": ["multisite"],
                "user_state": "logged_in",
                "message": {
                    "_main": "Added a user to a site",
                    "_space_start": "",
                    "blog_id": ["blog_id"],
                    "blog_name": ["blog_name"],
                    "role_given": ["role_given"],
                    "_space_end": "",
                    **USER_SUMMARY,
                },
                "event_handler": {"num_args": 3},
            },
        },
    },
}

SUPER_ADMIN_EVENTS = {
    "super_admins": {
        "title": "Super Admin Events",
        "group": "user",
        "description": "Responsible for logging all Super Admins related activities.",
        "events": {
            "grant_super_admin": {
                "title": "Grant Super Admin Privilege",
                "action": "modify",
                "event_id": 5001,
                "severity": "alert",
                "screen": ["admin", "network"],
                "user_state": "logged_in",
                "message": {
                    "_main": "Tried to grant the Super Admin Privilege to a user, but the request was unsuccessful.",
                    "_space_start": "",
                    "roles": ["roles"],
                    "_space_end": "",
                    **USER_SUMMARY,
                    "is_user_owner_of_account": ["is_user_owner_of_account"],
                },
                "event_handler": {"num_args": 1},
            },
            "granted_super_admin": {
                "title": "Granted Super Admin Privilege",
                "action": "modified",
                "event_id": 5002,
                "severity": "alert",
                "screen": ["admin", "network"],
                "user_state": "logged_in",
                "message": {
                    "_main": "Granted the Super Admin Privilege to a user.",
                    "_space_start": "",
                    "role_previous": ["roles", "previous"],
                    "roles": ["roles", "new"],
                    "_space_end": "",
                    **USER_SUMMARY,
                    "is_user_owner_of_account": ["is_user_owner_of_account"],
                },
                "event_handler": {"num_args": 1},
            },
        },
    },
}


def profile_url(context: RequestContext, user_id: int) -> str:
    return f"{context.blog_url.rstrip('/')}/wp-admin/user-edit.php?user_id={user_id}"


def login_url(context: RequestContext) -> str:
    return f"{context.blog_url.rstrip('/')}/wp-login.php"


def user_fields(audit, user: Optional[UserRecord]) -> Dict[str, Any]:
    """Field values describing the target user of a user event."""
    if user is None:
        return {}
    return {
        "object_id": user.id,
        "user_login": user.login,
        "display_name": user.display_name,
        "roles": list(user.roles),
        "first_name": user.first_name,
        "last_name": user.last_name,
        "nickname": user.nickname,
        "user_email": user.email,
        "profile_url": profile_url(audit.context, user.id),
        "is_user_owner_of_account": "Yes" if audit.context.user.id == user.id else "No",
    }


def error_text(error: Any) -> str:
    if isinstance(error, (str, Exception)) and str(error):
        return str(error)
    return "Unknown error"


def format_user_field_info(info: str, field: str, context: str, active) -> str:
    if field == "email":
        field = "user_email"

    if field in USER_TABLE_FIELDS:
        name = f"{field}_{context}" if context and f"{field}_{context}" in active.field_values else field
        label = f"{context} {USER_TABLE_FIELDS[field].lower()}" if context else USER_TABLE_FIELDS[field]
        label = label[:1].upper() + label[1:]
        return f"{label}: {to_text(parse_value(active.value(name)))}"

    if field in ("user_id", "object_id"):
        return f"User ID: {active.object_id}"
    if field == "meta_key":
        return f"Custom field: {active.value('meta_key')}"
    if field == "update_info":
        return to_text(active.value("update_info"))
    if field == "is_user_owner_of_account":
        return f"Is user owner of account: {active.value(field)}"
    return info


handlers = HandlerTable("user", field_formatter=format_user_field_info)


@handlers.on("updated_user_meta")
def updated_user_meta(audit, event, meta_id, object_id, meta_key, meta_value=None):
    generic_id = audit.registry.get_event_id_by_slug("updated_user_meta", "user")
    if audit.registry.is_meta_field_ignorable(generic_id, meta_key):
        return False
    # The observer drops no-op updates from the snapshot store
    if audit.snapshot_sources is not None and not audit.snapshots.has_meta(object_id, meta_key):
        return False

    user = audit.assembler.lookup_user(int(object_id or 0))
    event.update(user_fields(audit, user))
    event.update(
        object_id=object_id,
        meta_key=meta_key,
        meta_value_previous=parse_value(audit.snapshots.get_meta(object_id, meta_key)),
        meta_value_new=parse_value(meta_value),
    )


@handlers.on("profile_update")
def profile_update(audit, event, user_id, old_user_data=None):
    user = audit.assembler.lookup_user(int(user_id or 0))
    if user is None:
        return False

    if isinstance(old_user_data, UserRecord):
        previous = old_user_data.as_data()
        previous["user_email"] = old_user_data.email
    else:
        previous = dict(old_user_data or {})

    current = user_fields(audit, user)
    event.update(current)
    event.update(
        update_info=build_update_info(previous, {name: current[name] for name in PROFILE_FIELDS}),
        previous_content=previous,
    )


@handlers.on("wp_login_failed")
def wp_login_failed(audit, event, username, error=None):
    user = audit.users.get_user_by_login(username) if audit.users else None
    event.update(user_fields(audit, user))
    event.update(
        user_login=username,
        login_url=login_url(audit.context),
        _error_msg=error_text(error) if error is not None else "",
    )


@handlers.on("wp_login")
def wp_login(audit, event, user_login, user=None):
    if not isinstance(user, UserRecord):
        user = audit.users.get_user_by_login(user_login) if audit.users else None
    if user is None:
        return False
    event.update(user_fields(audit, user))
    event.update(current_user_id=user.id, login_url=login_url(audit.context))


@handlers.on("wp_logout")
def wp_logout(audit, event, user_id=0):
    user = audit.assembler.lookup_user(int(user_id or audit.context.user.id))
    if user is None:
        return False
    event.update(user_fields(audit, user))
    event.update(current_user_id=user.id)


@handlers.on("can_add_user_to_blog")
def can_add_user_to_blog(audit, event, retval, user_id=0, role="", blog_id=0):
    # Only a refusal is an event
    if retval is True:
        return False
    user = audit.assembler.lookup_user(int(user_id or 0))
    event.update(user_fields(audit, user))
    event.update(object_id=int(user_id or 0), role_given=role, blog_id=blog_id,
                 _error_msg=error_text(retval))


@handlers.on("add_user_to_blog")
def add_user_to_blog(audit, event, user_id, role="", blog_id=0):
    user = audit.assembler.lookup_user(int(user_id or 0))
    event.update(user_fields(audit, user))
    event.update(object_id=int(user_id or 0), role_given=role, blog_id=blog_id)


@handlers.on("grant_super_admin")
def grant_super_admin(audit, event, user_id):
    user = audit.assembler.lookup_user(int(user_id or 0))
    event.update(user_fields(audit, user))
    event.update(object_id=int(user_id or 0))
    return DEFER


@handlers.on("granted_super_admin")
def granted_super_admin(audit, event, user_id):
    audit.clear_deferred("user", "grant_super_admin")

    user = audit.assembler.lookup_user(int(user_id or 0))
    event.update(user_fields(audit, user))
    roles = list(user.roles) if user else []
    previous = [role for role in roles if role != "super_admin"]
    if "super_admin" not in roles:
        roles.append("super_admin")
    event.update(object_id=int(user_id or 0), roles_previous=previous or "None", roles_new=roles)
