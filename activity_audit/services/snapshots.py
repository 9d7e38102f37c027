"""
Pre-mutation snapshots.

Observers attached at the earliest priority capture the state of an
object before the host mutates it, so the later event handler can
report previous values. Snapshots live for the request only.
"""
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from activity_audit.hooks import HookRegistry

logger = logging.getLogger(__name__)

EARLIEST_PRIORITY = -1000
META_OBJECT_TYPES = ("post", "comment", "term", "user")

_MISSING = object()


class SnapshotSources(Protocol):
    """Raw reads the observers need from the host's data layer."""

    def get_post(self, post_id: int) -> Optional[Mapping[str, Any]]: ...

    def get_term(self, term_id: int, taxonomy: str = "") -> Optional[Mapping[str, Any]]: ...

    def get_meta(self, object_type: str, object_id: int, meta_key: str) -> Any: ...


class SnapshotStore:
    """Keyed store of "before" state for the current request."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._meta: Dict[int, Dict[str, Any]] = {}

    def capture(self, key: str, snapshot: Any) -> None:
        self._data[key] = snapshot

    def get(self, key: str, field: Optional[str] = None, default: Any = None) -> Any:
        """
        Return the snapshot for ``key``. With ``field``, return that entry of
        the snapshot, or the whole snapshot when the entry is absent.
        """
        data = self._data.get(key, _MISSING)
        if data is _MISSING:
            return default
        if field is None:
            return data
        if isinstance(data, Mapping):
            return data.get(field, data)
        return getattr(data, field, data)

    def capture_meta(self, object_id: int, meta_key: str, previous: Any, new: Any) -> bool:
        """Store the previous metadata value unless the update is a no-op."""
        if isinstance(previous, (list, tuple)) and len(previous) == 1:
            previous = previous[0]
        if previous == new:
            self._meta.get(object_id, {}).pop(meta_key, None)
            return False
        self._meta.setdefault(object_id, {})[meta_key] = previous
        return True

    def get_meta(self, object_id: int, meta_key: str, default: Any = None) -> Any:
        return self._meta.get(object_id, {}).get(meta_key, default)

    def has_meta(self, object_id: int, meta_key: str) -> bool:
        return meta_key in self._meta.get(object_id, {})

    def clear(self) -> None:
        self._data.clear()
        self._meta.clear()


def attach_observers(hooks: HookRegistry, store: SnapshotStore, sources: SnapshotSources) -> None:
    """Register the pre-mutation observers on the host hooks."""

    def post_updated(post_id, post_after=None, post_before=None):
        before = post_before if post_before is not None else sources.get_post(post_id)
        store.capture("post", before)

    def edit_terms(term_id, taxonomy=""):
        store.capture("term", sources.get_term(term_id, taxonomy))

    def edit_term_taxonomy(tt_id, taxonomy="", args=None):
        term = sources.get_term(tt_id, taxonomy)
        if term is None:
            return
        snapshot = dict(term)
        parent_id = snapshot.get("parent") or 0
        parent = sources.get_term(parent_id, taxonomy) if parent_id else None
        snapshot["parent_name"] = parent.get("name", "") if parent else ""
        snapshot.setdefault("count", 0)
        store.capture("edit_term_taxonomy", snapshot)

    def pre_delete_term(term_id, taxonomy=""):
        store.capture("pre_delete_term", sources.get_term(term_id, taxonomy))

    def delete_term_taxonomy(tt_id):
        store.capture("delete_term_taxonomy", sources.get_term(tt_id))

    def term_data(data, *args):
        # registered as a filter, the data is passed through untouched
        store.capture("term_data", dict(data) if isinstance(data, Mapping) else data)
        return data

    def term_parent(parent, term_id=0, taxonomy="", *args):
        store.capture("term_parent", {"term_id": term_id, "parent": parent, "taxonomy": taxonomy})
        return parent

    actions = (
        ("post_updated", post_updated, 3),
        ("edit_terms", edit_terms, 2),
        ("edit_term_taxonomy", edit_term_taxonomy, 3),
        ("pre_delete_term", pre_delete_term, 2),
        ("delete_term_taxonomy", delete_term_taxonomy, 1),
    )
    for name, func, accepted in actions:
        hooks.add_action(name, _guarded(name, func), EARLIEST_PRIORITY, accepted)

    filters = (
        ("wp_insert_term_data", term_data, None),
        ("wp_update_term_data", term_data, None),
        ("wp_update_term_parent", term_parent, 3),
    )
    for name, func, accepted in filters:
        hooks.add_filter(name, _guarded(name, func, is_filter=True), EARLIEST_PRIORITY, accepted)

    for object_type in META_OBJECT_TYPES:
        name = f"update_{object_type}_meta"
        hooks.add_action(name, _guarded(name, _meta_observer(store, sources, object_type)),
                         EARLIEST_PRIORITY, 4)


def _guarded(name: str, func, is_filter: bool = False):
    """Observers must never break the host dispatch."""
    def observer(*args):
        try:
            result = func(*args)
        except Exception:
            logger.debug("Snapshot observer %s failed", name, exc_info=True)
            return args[0] if is_filter and args else None
        return result
    return observer


def _meta_observer(store: SnapshotStore, sources: SnapshotSources, object_type: str):
    def observe(meta_id, object_id, meta_key, meta_value=None):
        previous = sources.get_meta(object_type, object_id, meta_key)
        store.capture_meta(object_id, meta_key, previous, meta_value)
    return observe
