"""
HTML rendering of stored log messages.

The main message is shown first, ``---text---`` spans are emphasised,
the ``_space_start``/``_space_end`` markers become blank lines and every
other field is shown on its own line. Hosts can rewrite the output
through the display hooks.
"""
import html
import re
from typing import Dict, Optional

from activity_audit.hooks import HookName, HookRegistry
from activity_audit.models.log import ActivityLog
from activity_audit.services.flatten import parse_message

_EMPHASIS_RE = re.compile(r"---(.+?)---")


def emphasize(text: str) -> str:
    """Escape ``text`` and wrap ``---x---`` spans in <strong>."""
    return _EMPHASIS_RE.sub(r"<strong>\1</strong>", html.escape(text))


def _lines(text: str) -> str:
    return "<br>".join(html.escape(line) for line in text.split("\n"))


def render_message(log: ActivityLog, hooks: Optional[HookRegistry] = None) -> str:
    fields: Dict[str, str] = parse_message(log.message)
    hooks = hooks or HookRegistry()

    parts = []
    for name, value in fields.items():
        if name == "_main":
            main = hooks.apply_filters(HookName.MAIN_MESSAGE_DISPLAY, emphasize(value), log)
            parts.append(f"<p>{main}</p>")
        elif name.startswith("_space_"):
            parts.append("<br>")
        else:
            parts.append(f"<span>{_lines(value)}</span><br>")

    return hooks.apply_filters(HookName.MESSAGE_DISPLAY, "".join(parts), fields, log)
