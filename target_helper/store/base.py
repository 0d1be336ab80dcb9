"""
Resource store interface.

The trellis store is a path addressed hierarchical JSON store (OADA). Paths
either start at a user's bookmarks (``/bookmarks/...``) or address a resource
directly (``/resources/<id>/...``). A value of the form ``{"_id": ...}`` is a
link: path traversal follows it into the linked resource. Links carrying a
``_rev`` are versioned, and changes to the child propagate to watchers of the
parent.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from target_helper.shared.observability import get_logger

logger = get_logger(__name__)


class StoreError(RuntimeError):
    """Raised when a store request fails."""

    def __init__(self, message: str, path: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.status = status


class NotFoundError(StoreError):
    """Raised when a path does not resolve to anything."""

    def __init__(self, path: str):
        super().__init__(f"Not found: {path}", path=path, status=404)


@dataclass
class Change:
    """One change event delivered by a watch"""

    path: str  # relative to the watched resource
    type: str  # "merge" | "delete"
    body: Any


class Watch(ABC):
    """
    Cancellable stream of Change events for one watched resource.

    Iterating ends once the watch is closed. close() is idempotent.
    """

    def __init__(self, path: str):
        self.path = path
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> AsyncIterator[Change]:
        return self

    @abstractmethod
    async def __anext__(self) -> Change:
        pass

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release()
        logger.debug("watch_closed", path=self.path)

    @abstractmethod
    async def _release(self) -> None:
        pass


def split_path(path: str) -> List[str]:
    return [part for part in path.strip("/").split("/") if part]


def join_path(*parts: str) -> str:
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/" + "/".join(segments)


def nest(keys: List[str], value: Any) -> Any:
    """Wrap value in one mapping level per key: nest(["a", "b"], 1) == {"a": {"b": 1}}"""
    for key in reversed(keys):
        value = {key: value}
    return value


def _walk_tree(tree: Dict[str, Any], segments: List[str]) -> List[Optional[Dict]]:
    """Tree node for every path prefix, None once the tree has no match."""
    nodes: List[Optional[Dict]] = []
    node: Optional[Dict] = tree
    for segment in segments:
        if node is not None:
            node = node.get(segment, node.get("*"))
            if not isinstance(node, dict):
                node = None
        nodes.append(node)
    return nodes


class ResourceStore(ABC):
    """
    Async client capability over the hierarchical store.

    Subclasses provide the raw operations; ``put`` with a ``tree`` creates any
    missing intermediate resources described by the tree before writing,
    the way the OADA client does.
    """

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Return the data at path. Raises NotFoundError."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """HEAD equivalent"""

    @abstractmethod
    async def post(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        """Create a child (or a new resource for /resources); returns its location."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        pass

    @abstractmethod
    async def watch(self, path: str) -> Watch:
        """Open a watch on the resource at path."""

    @abstractmethod
    async def _put(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        pass

    async def put(
        self,
        path: str,
        data: Any,
        content_type: Optional[str] = None,
        tree: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Deep merge data at path; returns the written location."""
        if tree is not None:
            await self._ensure_tree_path(path, tree)
        return await self._put(path, data, content_type)

    async def close(self) -> None:
        """Release any connections held by the store."""

    async def ensure(
        self, path: str, data: Any, tree: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Create path with data unless it already exists; returns current data."""
        try:
            return await self.get(path)
        except NotFoundError:
            logger.info("store_path_created", path=path)
            await self.put(path, data, tree=tree)
            return data

    async def _ensure_tree_path(self, path: str, tree: Dict[str, Any]) -> None:
        segments = split_path(path)
        nodes = _walk_tree(tree, segments)
        for depth, (segment, node) in enumerate(zip(segments, nodes), start=1):
            if node is None:
                break
            content_type = node.get("_type")
            if not content_type:
                continue
            prefix = "/" + "/".join(segments[:depth])
            if await self.exists(prefix):
                continue
            location = await self.post(
                "/resources", {"_type": content_type}, content_type=content_type
            )
            link: Dict[str, Any] = {"_id": location.strip("/")}
            if "_rev" in node:
                link["_rev"] = 0
            parent = "/" + "/".join(segments[: depth - 1])
            await self._put(parent, {segment: link})
            logger.debug("tree_resource_created", path=prefix, _id=link["_id"])


def resource_id(location: str) -> Tuple[str, str]:
    """Split a location like /resources/abc into ("resources/abc", "abc")."""
    rid = location.strip("/")
    return rid, rid.split("/", 1)[-1]
