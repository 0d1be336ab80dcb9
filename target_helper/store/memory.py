"""
In-process resource store.

Holds resources in a dict keyed by ``resources/<id>`` and reproduces the parts
of OADA behaviour the helper relies on: link following during path traversal,
tree-driven resource creation, deep-merge PUT, generated keys on POST, and
change propagation from a child resource to watchers of any parent that holds
a versioned link to it.
"""

import asyncio
import copy
import itertools
import time
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import active_watches

from .base import (
    Change,
    NotFoundError,
    ResourceStore,
    StoreError,
    Watch,
    nest,
    split_path,
)

logger = get_logger(__name__)

BOOKMARKS_ID = "resources/bookmarks"

_counter = itertools.count()


def new_key() -> str:
    """Lexically time-sortable unique key (ksuid-like)."""
    return f"{time.time_ns():020d}{next(_counter) % 1000000:06d}{uuid.uuid4().hex[:8]}"


def is_link(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("_id"), str)


def deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class _Location:
    """Result of resolving a path against the stored resources."""

    def __init__(self, rid: str, inner: List[str], missing: List[str]):
        self.rid = rid
        self.inner = inner  # keys inside rid that exist
        self.missing = missing  # trailing keys that do not exist yet
        # (parent rid, keys inside parent) of the last link followed
        self.via: Optional[Tuple[str, List[str]]] = None


class MemoryWatch(Watch):
    def __init__(self, store: "InMemoryResourceStore", path: str, rid: str):
        super().__init__(path)
        self.rid = rid
        self._store = store
        self._queue: "asyncio.Queue[Optional[Change]]" = asyncio.Queue()

    def deliver(self, change: Change) -> None:
        if not self._closed:
            self._queue.put_nowait(change)

    async def __anext__(self) -> Change:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def _release(self) -> None:
        self._store._unregister(self)
        self._queue.put_nowait(None)


class InMemoryResourceStore(ResourceStore):
    """ResourceStore kept entirely in memory; used by tests and local runs."""

    def __init__(self) -> None:
        self._resources: Dict[str, Dict[str, Any]] = {
            BOOKMARKS_ID: {
                "_id": BOOKMARKS_ID,
                "_rev": 1,
                "_type": "application/vnd.oada.bookmarks.1+json",
            }
        }
        self._watches: Dict[str, List[MemoryWatch]] = {}
        self.requests: List[Tuple[str, str]] = []  # (method, path) log

    # ---- path resolution ----

    def _locate(self, path: str) -> _Location:
        parts = split_path(path)
        if not parts:
            raise NotFoundError(path)
        if parts[0] == "bookmarks":
            rid, rest = BOOKMARKS_ID, parts[1:]
        elif parts[0] == "resources" and len(parts) > 1:
            rid, rest = f"resources/{parts[1]}", parts[2:]
        else:
            raise NotFoundError(path)
        if rid not in self._resources:
            raise NotFoundError(path)

        location = _Location(rid, [], [])
        node: Any = self._resources[rid]
        for index, key in enumerate(rest):
            if not isinstance(node, dict) or key not in node:
                location.missing = rest[index:]
                return location
            child = node[key]
            if is_link(child) and child["_id"] in self._resources:
                location.via = (location.rid, location.inner + [key])
                location.rid = child["_id"]
                location.inner = []
                node = self._resources[location.rid]
            else:
                location.inner.append(key)
                node = child
        return location

    def _node(self, rid: str, inner: List[str]) -> Any:
        node: Any = self._resources[rid]
        for key in inner:
            node = node[key]
        return node

    # ---- change propagation ----

    def _parents(self, rid: str) -> List[Tuple[str, List[str]]]:
        """(parent rid, key path) for every versioned link pointing at rid."""
        found: List[Tuple[str, List[str]]] = []

        def scan(parent: str, node: Any, keys: List[str]) -> None:
            if not isinstance(node, dict):
                return
            for key, value in node.items():
                if is_link(value):
                    if value["_id"] == rid and "_rev" in value:
                        found.append((parent, keys + [key]))
                    continue
                scan(parent, value, keys + [key])

        for parent, body in self._resources.items():
            if parent != rid:
                scan(parent, body, [])
        return found

    def _notify(self, rid: str, change_type: str, body: Any) -> None:
        seen: Set[str] = set()
        pending = [(rid, body)]
        while pending:
            current, current_body = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            for watch in list(self._watches.get(current, [])):
                watch.deliver(Change(path="", type=change_type, body=current_body))
            for parent, keys in self._parents(current):
                pending.append((parent, nest(keys, current_body)))

    def _bump(self, rid: str) -> None:
        self._resources[rid]["_rev"] = self._resources[rid].get("_rev", 0) + 1

    # ---- ResourceStore ----

    async def get(self, path: str) -> Any:
        self.requests.append(("GET", path))
        location = self._locate(path)
        if location.missing:
            raise NotFoundError(path)
        return copy.deepcopy(self._node(location.rid, location.inner))

    async def exists(self, path: str) -> bool:
        try:
            location = self._locate(path)
        except NotFoundError:
            return False
        return not location.missing

    async def _put(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        self.requests.append(("PUT", path))
        location = self._locate(path)
        keys = location.inner + location.missing
        if not keys and not isinstance(data, dict):
            raise StoreError(f"Cannot replace resource body at {path}", path=path)
        patch = nest(keys, data)
        deep_merge(self._resources[location.rid], patch)
        self._bump(location.rid)
        self._notify(location.rid, "merge", copy.deepcopy(patch))
        return "/" + "/".join([location.rid] + keys)

    async def post(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        self.requests.append(("POST", path))
        if split_path(path) == ["resources"]:
            rid = f"resources/{new_key()}"
            body = copy.deepcopy(data) if isinstance(data, dict) else {}
            body["_id"] = rid
            body["_rev"] = 1
            if content_type and "_type" not in body:
                body["_type"] = content_type
            self._resources[rid] = body
            return f"/{rid}"
        key = new_key()
        await self._put(f"{path.rstrip('/')}/{key}", data, content_type)
        return f"{path.rstrip('/')}/{key}"

    async def delete(self, path: str) -> None:
        self.requests.append(("DELETE", path))
        location = self._locate(path)
        if location.missing:
            raise NotFoundError(path)
        if location.inner:
            rid, keys = location.rid, location.inner
        elif location.via is not None:
            # deleting a linked path removes the link, not the resource
            rid, keys = location.via
        else:
            self._resources.pop(location.rid, None)
            return
        container = self._node(rid, keys[:-1])
        del container[keys[-1]]
        self._bump(rid)
        self._notify(rid, "delete", nest(keys, None))

    async def watch(self, path: str) -> Watch:
        location = self._locate(path)
        if location.missing or location.inner:
            raise NotFoundError(path)
        watch = MemoryWatch(self, path, location.rid)
        self._watches.setdefault(location.rid, []).append(watch)
        active_watches.inc()
        logger.debug("watch_opened", path=path, rid=location.rid)
        return watch

    def _unregister(self, watch: MemoryWatch) -> None:
        watches = self._watches.get(watch.rid, [])
        if watch in watches:
            watches.remove(watch)
            active_watches.dec()

    # ---- helpers for seeding ----

    def create_resource(self, data: Dict[str, Any], rid: Optional[str] = None) -> str:
        """Synchronously store a resource and return its id."""
        rid = rid or f"resources/{new_key()}"
        body = copy.deepcopy(data)
        body["_id"] = rid
        body.setdefault("_rev", 1)
        self._resources[rid] = body
        return rid

    def watch_count(self, rid: Optional[str] = None) -> int:
        if rid is not None:
            return len(self._watches.get(rid, []))
        return sum(len(w) for w in self._watches.values())
