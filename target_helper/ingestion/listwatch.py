"""
Watch a list resource and call a handler once per new item.

A list is a resource whose items are links, possibly nested under
intermediate levels (``day-index/<day>/<key>``). ``items`` is the key pattern
from the list down to the items; ``"*"`` matches any key. Where an
intermediate level is itself a linked resource its contents are fetched, so
an item added inside a newly linked day resource is still seen.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from target_helper.shared.observability import get_logger
from target_helper.shared.tasks import create_monitored_task
from target_helper.store.base import Change, NotFoundError, ResourceStore, Watch
from target_helper.store.memory import is_link

logger = get_logger(__name__)


@dataclass(frozen=True)
class ListItem:
    path: Tuple[str, ...]  # keys below the list resource
    link: Dict[str, Any]

    @property
    def key(self) -> str:
        return self.path[-1]

    @property
    def id(self) -> str:
        return self.link["_id"]


ItemHandler = Callable[[ListItem], Awaitable[None]]


def _matches(pattern: str, key: str) -> bool:
    return pattern == "*" or pattern == key


def _revision_bump(value: Any) -> bool:
    # polled stores report a changed child list as only its new _rev
    return isinstance(value, dict) and set(value) == {"_rev"}


class ListWatcher:
    def __init__(
        self,
        store: ResourceStore,
        path: str,
        on_item: ItemHandler,
        items: Sequence[str] = ("*",),
        assume_handled: bool = False,
        name: Optional[str] = None,
    ):
        """
        Args:
            store: Resource store
            path: List resource to watch
            on_item: Awaited once per new item; failures are logged
            items: Key pattern from the list to its items
            assume_handled: Treat items present at start as already handled
            name: Used in logs and the consumer task name
        """
        self.store = store
        self.path = path.rstrip("/")
        self.on_item = on_item
        self.items = tuple(items)
        self.assume_handled = assume_handled
        self.name = name or self.path
        self._seen: Set[Tuple[str, ...]] = set()
        self._watch: Optional[Watch] = None
        self._task: Optional[asyncio.Task] = None
        self.stats = {"handled": 0, "failed": 0}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        # watch before reading so nothing added in between is missed
        self._watch = await self.store.watch(self.path)
        snapshot = await self.store.get(self.path)
        existing = await self._collect(snapshot, self.items, ())
        if self.assume_handled:
            self._seen.update(item.path for item in existing)
            existing = []
        logger.info(
            "list_watch_started",
            watcher=self.name,
            path=self.path,
            existing=len(self._seen) if self.assume_handled else len(existing),
            assume_handled=self.assume_handled,
        )
        self._task = create_monitored_task(
            self._consume(existing), name=f"listwatch:{self.name}"
        )

    async def stop(self) -> None:
        if self._watch is not None:
            await self._watch.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("list_watch_stopped", watcher=self.name, **self.stats)

    async def _consume(self, initial: List[ListItem]) -> None:
        for item in initial:
            await self._handle(item)
        assert self._watch is not None
        async for change in self._watch:
            await self._on_change(change)

    async def _on_change(self, change: Change) -> None:
        if change.type == "delete":
            self._forget(change.body, self.items, ())
            return
        if change.type != "merge":
            return
        for item in await self._collect(change.body, self.items, ()):
            await self._handle(item)

    async def _handle(self, item: ListItem) -> None:
        if item.path in self._seen:
            return
        self._seen.add(item.path)
        try:
            await self.on_item(item)
            self.stats["handled"] += 1
        except Exception as e:
            # one bad item must not stop the watch
            self.stats["failed"] += 1
            logger.error(
                "list_item_failed",
                watcher=self.name,
                item="/".join(item.path),
                item_id=item.link.get("_id"),
                error=str(e),
                exc_info=True,
            )

    async def _collect(
        self, body: Any, pattern: Tuple[str, ...], prefix: Tuple[str, ...]
    ) -> List[ListItem]:
        if not isinstance(body, dict) or not pattern:
            return []
        found: List[ListItem] = []
        for key in sorted(body):
            if key.startswith("_") or not _matches(pattern[0], key):
                continue
            child = body[key]
            path = prefix + (key,)
            if len(pattern) == 1:
                if is_link(child):
                    found.append(ListItem(path=path, link=child))
                continue
            if is_link(child) or _revision_bump(child):
                try:
                    child = await self.store.get(f"{self.path}/{'/'.join(path)}")
                except NotFoundError:
                    continue
            found.extend(await self._collect(child, pattern[1:], path))
        return found

    def _forget(self, body: Any, pattern: Tuple[str, ...], prefix: Tuple[str, ...]) -> None:
        if not isinstance(body, dict) or not pattern:
            return
        for key, child in body.items():
            if key.startswith("_") or not _matches(pattern[0], key):
                continue
            path = prefix + (key,)
            if child is None:
                # everything at or below path is gone
                self._seen = {p for p in self._seen if p[: len(path)] != path}
            else:
                self._forget(child, pattern[1:], path)
