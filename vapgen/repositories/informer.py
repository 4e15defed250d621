"""Read-through local index of watched objects.

Each watched kind gets one ``Informer``. Watch events are applied to the
index first and then dispatched to the registered handlers, so a handler
always sees an index that already reflects the event it is handling.
"""

import copy
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from vapgen.core.logging import get_logger
from vapgen.exceptions import NotFoundError
from vapgen.models.resources import Kind, object_key

logger = get_logger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

IndexFunc = Callable[[Dict[str, Any]], Iterable[str]]


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Placeholder for an object whose deletion was observed only on resync."""

    key: str
    obj: Dict[str, Any]


@dataclass
class EventHandlers:
    """Callbacks a consumer registers for one watched kind."""

    on_add: Callable[[Any], None]
    on_update: Callable[[Any, Any], None]
    on_delete: Callable[[Any], None]


class Informer:
    """Thread-safe cache of one resource kind, fed by watch events."""

    def __init__(self, kind: Kind, indexers: Optional[Dict[str, IndexFunc]] = None):
        self.kind = kind
        self._lock = threading.RLock()
        self._items: Dict[str, Dict[str, Any]] = {}
        self._indexers: Dict[str, IndexFunc] = dict(indexers or {})
        self._indices: Dict[str, Dict[str, Set[str]]] = {n: {} for n in self._indexers}
        self._handlers: List[EventHandlers] = []
        self._synced = threading.Event()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_event_handlers(self, handlers: EventHandlers) -> None:
        with self._lock:
            self._handlers.append(handlers)

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    # ------------------------------------------------------------------
    # Lister
    # ------------------------------------------------------------------

    def get(self, name: str, namespace: str = "") -> Dict[str, Any]:
        """Return a deep copy of the cached object or raise ``NotFoundError``."""
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            obj = self._items.get(key)
            if obj is None:
                raise NotFoundError(self.kind.value.kind, name, namespace)
            return copy.deepcopy(obj)

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(obj) for obj in self._items.values()]

    def by_index(self, index_name: str, value: str) -> List[Dict[str, Any]]:
        with self._lock:
            keys = self._indices[index_name].get(value, set())
            return [copy.deepcopy(self._items[k]) for k in sorted(keys)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    # ------------------------------------------------------------------
    # Watch input
    # ------------------------------------------------------------------

    def handle_event(self, event_type: Optional[str], obj: Dict[str, Any]) -> None:
        """Apply one watch event.

        ``event_type`` is ``None`` for objects delivered by an initial listing.
        """
        key = object_key(obj)
        if not key:
            logger.warning(f"Ignoring {self.kind.value.kind} event without a name")
            return

        if event_type == DELETED:
            with self._lock:
                old = self._remove(key)
            self._dispatch_delete(old if old is not None else obj)
            return

        if event_type not in (None, ADDED, MODIFIED):
            logger.debug(f"Ignoring {self.kind.value.kind} event of type {event_type}")
            return

        with self._lock:
            old = self._items.get(key)
            self._store(key, obj)
        if old is None:
            self._dispatch_add(obj)
        else:
            self._dispatch_update(old, obj)

    def replace(self, objs: Iterable[Dict[str, Any]]) -> None:
        """Replace the cache with a full listing.

        Cached objects missing from the listing are delivered to delete
        handlers wrapped in ``DeletedFinalStateUnknown``.
        """
        incoming = {object_key(o): o for o in objs}
        with self._lock:
            stale = {k: v for k, v in self._items.items() if k not in incoming}
            previous = {k: self._items.get(k) for k in incoming}
            for key in stale:
                self._remove(key)
            for key, obj in incoming.items():
                self._store(key, obj)

        for key, obj in incoming.items():
            old = previous[key]
            if old is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(old, obj)
        for key, obj in stale.items():
            self._dispatch_delete(DeletedFinalStateUnknown(key=key, obj=obj))

        self._synced.set()
        logger.info(f"{self.kind.value.kind} informer synced with {len(incoming)} objects")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store(self, key: str, obj: Dict[str, Any]) -> None:
        if key in self._items:
            self._unindex(key, self._items[key])
        self._items[key] = copy.deepcopy(obj)
        for index_name, func in self._indexers.items():
            for value in func(obj):
                self._indices[index_name].setdefault(value, set()).add(key)

    def _remove(self, key: str) -> Optional[Dict[str, Any]]:
        old = self._items.pop(key, None)
        if old is not None:
            self._unindex(key, old)
        return old

    def _unindex(self, key: str, obj: Dict[str, Any]) -> None:
        for index_name, func in self._indexers.items():
            index = self._indices[index_name]
            for value in func(obj):
                keys = index.get(value)
                if keys is None:
                    continue
                keys.discard(key)
                if not keys:
                    del index[value]

    def _handlers_snapshot(self) -> List[EventHandlers]:
        with self._lock:
            return list(self._handlers)

    def _dispatch_add(self, obj) -> None:
        for handlers in self._handlers_snapshot():
            handlers.on_add(obj)

    def _dispatch_update(self, old, obj) -> None:
        for handlers in self._handlers_snapshot():
            handlers.on_update(old, obj)

    def _dispatch_delete(self, obj) -> None:
        for handlers in self._handlers_snapshot():
            handlers.on_delete(obj)
