"""
Text encoding for the flattened log columns.

Messages are stored as ``field=value`` pairs joined by MESSAGE_SEPARATOR.
User, object and metadata blobs use the same pair encoding joined by
METADATA_SEPARATOR, with nested mappings written as ``parent[child]``
keys. Reserved tokens never appear as literal data: ``%`` and ``!`` are
percent-escaped, line breaks become LINE_BREAK, and keys additionally
escape ``=``, ``[`` and ``]``.
"""
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

MESSAGE_SEPARATOR = "!|||!"
METADATA_SEPARATOR = "!|!"
LINE_BREAK = "!__break__!"
ERROR_SEPARATOR = "!__error__!"
COUNTER_MARKER = "###LOG_COUNTER###"
IGNORE_SENTINEL = "_ignore_"
UPDATE_BANNER = "!-----[{timestamp}]-----!"

_BANNER_RE = re.compile(r"!-----\[([^\]]*)\]-----!")
_UNESCAPE_RE = re.compile(r"%(25|21|3D|5B|5D|0D)")

_VALUE_ESCAPES = (("%", "%25"), ("!", "%21"), ("\r", "%0D"))
_KEY_ESCAPES = _VALUE_ESCAPES + (("=", "%3D"), ("[", "%5B"), ("]", "%5D"))


def _escape(text: str, table) -> str:
    for raw, encoded in table:
        text = text.replace(raw, encoded)
    return text.replace("\n", LINE_BREAK)


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def escape_value(value: Any) -> str:
    return _escape(to_text(value), _VALUE_ESCAPES)


def escape_key(key: Any) -> str:
    return _escape(to_text(key), _KEY_ESCAPES)


def unescape(text: str) -> str:
    text = text.replace(LINE_BREAK, "\n")
    return _UNESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), text)


def is_ignored(value: Any) -> bool:
    """True for values equal to, or ending with, the ignore sentinel."""
    return isinstance(value, str) and value.endswith(IGNORE_SENTINEL)


def _join_pairs(pairs: Iterable[Tuple[str, Any]], separator: str) -> str:
    return separator.join(f"{escape_key(k)}={escape_value(v)}" for k, v in pairs)


def _split_pairs(text: str, separator: str) -> List[Tuple[str, str]]:
    pairs = []
    if not text:
        return pairs
    for chunk in text.split(separator):
        if not chunk:
            continue
        key, _, value = chunk.partition("=")
        pairs.append((unescape(key), unescape(value)))
    return pairs


def join_message(fields: Mapping) -> str:
    """Encode an ordered ``field -> info`` mapping as a message column."""
    return _join_pairs(fields.items(), MESSAGE_SEPARATOR)


def parse_message(text: Optional[str]) -> Dict[str, str]:
    return dict(_split_pairs(text or "", MESSAGE_SEPARATOR))


def _walk(data: Mapping, prefix: Optional[str] = None):
    for key, value in data.items():
        name = escape_key(key)
        path = name if prefix is None else f"{prefix}[{name}]"
        if isinstance(value, Mapping):
            yield from _walk(value, path)
        elif isinstance(value, (list, tuple)):
            yield from _walk(dict(enumerate(value)), path)
        else:
            yield path, escape_value(value)


def flatten_data(data: Optional[Mapping]) -> str:
    """Encode a (possibly nested) mapping for the user/object/metadata columns."""
    if not data:
        return ""
    return METADATA_SEPARATOR.join(f"{path}={value}" for path, value in _walk(data))


def _key_path(raw: str) -> List[str]:
    head, _, rest = raw.partition("[")
    parts = [head]
    if rest:
        parts.extend(rest.rstrip("]").split("]["))
    return [unescape(p) for p in parts]


def unflatten_data(text: Optional[str]) -> Dict[str, Any]:
    """Inverse of flatten_data. Sequences come back as index-keyed mappings."""
    result: Dict[str, Any] = {}
    if not text:
        return result
    for chunk in text.split(METADATA_SEPARATOR):
        if not chunk:
            continue
        raw_key, _, raw_value = chunk.partition("=")
        path = _key_path(raw_key)
        node = result
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[path[-1]] = unescape(raw_value)
    return result


def update_banner(timestamp: datetime) -> str:
    return UPDATE_BANNER.format(timestamp=timestamp.strftime("%Y-%m-%d %H:%M:%S"))


def append_update(previous: Optional[str], current: str, timestamp: datetime) -> str:
    """Keep the prior blob and append a timestamped banner followed by the new one."""
    if not previous:
        return current
    return f"{previous}{update_banner(timestamp)}{current}"


def split_updates(text: Optional[str]) -> List[Tuple[Optional[str], str]]:
    """
    Split an accumulated blob into ``(banner timestamp, block)`` entries.
    The first entry has no timestamp.
    """
    if not text:
        return []
    parts = _BANNER_RE.split(text)
    entries: List[Tuple[Optional[str], str]] = [(None, parts[0])]
    for i in range(1, len(parts), 2):
        entries.append((parts[i], parts[i + 1]))
    return entries


def replace_counter(message: str, counter: int) -> str:
    return message.replace(COUNTER_MARKER, str(counter))
