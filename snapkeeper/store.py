"""Keyed object cache and a de-duplicating work queue."""

from __future__ import annotations

import re
import threading
from collections import deque
from typing import Any, Dict, Hashable, List, Optional, Tuple

_INT_RE = re.compile(r"[+-]?[0-9]+")


def meta_namespace_key(obj: Any) -> str:
    """The key of an object: 'namespace/name', or just 'name' when cluster-scoped."""
    meta = obj.metadata
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    """Split a key into (namespace, name); raise ValueError on a malformed key."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


class Store:
    """A thread-safe cache of objects indexed by their key."""

    def __init__(self) -> None:
        self._items: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def add(self, obj: Any) -> None:
        with self._lock:
            self._items[meta_namespace_key(obj)] = obj

    def update(self, obj: Any) -> None:
        self.add(obj)

    def delete(self, obj: Any) -> None:
        with self._lock:
            self._items.pop(meta_namespace_key(obj), None)

    def get_by_key(self, key: str) -> Optional[Any]:
        """The object stored under key, or None."""
        with self._lock:
            return self._items.get(key)

    def list(self) -> List[Any]:
        with self._lock:
            return list(self._items.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items


def _parse_version(version: str, kind: str, name: str) -> int:
    if not _INT_RE.fullmatch(version):
        raise ValueError(
            f"error parsing ResourceVersion {version!r} of {kind} {name!r}"
        )
    return int(version)


def store_object_update(store: Store, obj: Any, kind: str) -> bool:
    """Save obj into store unless the store already holds a newer version.

    Returns True when the object was saved. Raises ValueError when a
    resource version cannot be parsed.
    """
    key = meta_namespace_key(obj)
    old = store.get_by_key(key)
    if old is None:
        store.add(obj)
        return True
    new_version = _parse_version(obj.metadata.resource_version, kind, key)
    old_version = _parse_version(old.metadata.resource_version, kind, key)
    if old_version > new_version:
        return False
    store.update(obj)
    return True


class WorkQueue:
    """A FIFO queue that never holds an item twice and never hands one item to two workers.

    An item added while it is being processed is queued again once the
    worker calls done() for it.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._shutting_down = False
        self._cond = threading.Condition()

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Take the next item, waiting up to timeout seconds.

        Returns None when the wait timed out, or when the queue has been
        shut down and holds nothing more.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout)
            if not self._queue:
                return None
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item

    def done(self, item: Hashable) -> None:
        """Mark item as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)