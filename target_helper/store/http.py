"""
HTTP resource store over httpx.

Watches are realized by polling the watched resource's ``_rev`` and emitting a
merge change holding the part of the body that differs from the previous
snapshot.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx

from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import active_watches

from .base import Change, NotFoundError, ResourceStore, StoreError, Watch

logger = get_logger(__name__)

JSON = "application/json"
_MISSING = object()
MAX_POLL_BACKOFF = 60.0


def diff(old: Any, new: Any) -> Any:
    """
    Merge-patch style difference: the subset of ``new`` that is not already in
    ``old``. Returns _MISSING when nothing changed.
    """
    if isinstance(old, dict) and isinstance(new, dict):
        changed: Dict[str, Any] = {}
        for key, value in new.items():
            sub = diff(old.get(key, _MISSING), value)
            if sub is not _MISSING:
                changed[key] = sub
        return changed if changed else _MISSING
    if old == new:
        return _MISSING
    return new


def removed_keys(old: Any, new: Any) -> Any:
    """Nested mapping of keys present in ``old`` but gone from ``new``."""
    if not (isinstance(old, dict) and isinstance(new, dict)):
        return _MISSING
    gone: Dict[str, Any] = {}
    for key, value in old.items():
        if key not in new:
            gone[key] = None
            continue
        sub = removed_keys(value, new[key])
        if sub is not _MISSING:
            gone[key] = sub
    return gone if gone else _MISSING


class PollingWatch(Watch):
    def __init__(self, store: "HttpResourceStore", path: str, snapshot: Dict):
        super().__init__(path)
        self._store = store
        self._snapshot = snapshot
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = asyncio.create_task(
            self._poll_loop(), name=f"watch:{path}"
        )

    async def _poll_loop(self) -> None:
        interval = self._store.poll_interval
        failures = 0
        try:
            while not self._closed:
                await asyncio.sleep(self._backoff(interval, failures))
                try:
                    body = await self._store.get(self.path)
                except NotFoundError:
                    raise
                except StoreError as e:
                    failures += 1
                    if failures >= self._store.watch_max_failures:
                        raise
                    # keep the snapshot so the next good poll reports the gap
                    logger.warning(
                        "watch_poll_retry", path=self.path, failures=failures, error=str(e)
                    )
                    continue
                failures = 0
                if body.get("_rev") == self._snapshot.get("_rev"):
                    continue
                merged = diff(self._snapshot, body)
                gone = removed_keys(self._snapshot, body)
                self._snapshot = body
                if merged is not _MISSING:
                    self._queue.put_nowait(Change(path="", type="merge", body=merged))
                if gone is not _MISSING:
                    self._queue.put_nowait(Change(path="", type="delete", body=gone))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("watch_poll_failed", path=self.path, error=str(e))
            # surfaced to the consumer on its next read
            self._queue.put_nowait(e)

    @staticmethod
    def _backoff(interval: float, failures: int) -> float:
        if not failures:
            return interval
        return min(interval * 2 ** failures, MAX_POLL_BACKOFF)

    async def __anext__(self) -> Change:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def _release(self) -> None:
        active_watches.dec()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._queue.put_nowait(None)


class HttpResourceStore(ResourceStore):
    """ResourceStore backed by an OADA server reached over HTTPS."""

    def __init__(
        self,
        domain: str,
        token: str,
        scheme: str = "https",
        timeout_seconds: float = 30.0,
        poll_interval: float = 2.0,
        watch_max_failures: int = 10,
        concurrency: int = 1,
        verify_tls: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        base_url = domain if "://" in domain else f"{scheme}://{domain}"
        self.poll_interval = poll_interval
        self.watch_max_failures = watch_max_failures
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_seconds,
            verify=verify_tls,
            limits=httpx.Limits(max_connections=max(concurrency, 1) * 4),
        )
        logger.info("http_store_initialized", base_url=base_url)

    async def close(self) -> None:
        await self.client.aclose()

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(path)
        if response.status_code >= 400:
            raise StoreError(
                f"{response.request.method} {path} failed with "
                f"{response.status_code}: {response.text[:200]}",
                path=path,
                status=response.status_code,
            )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}", path=path) from e
        self._raise_for_status(response, path)
        return response

    async def get(self, path: str) -> Any:
        response = await self._request("GET", path)
        return response.json()

    async def exists(self, path: str) -> bool:
        try:
            await self._request("HEAD", path)
        except NotFoundError:
            return False
        return True

    def _content_type(self, data: Any, content_type: Optional[str]) -> str:
        if content_type:
            return content_type
        if isinstance(data, dict) and isinstance(data.get("_type"), str):
            return data["_type"]
        return JSON

    async def _put(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        response = await self._request(
            "PUT",
            path,
            json=data,
            headers={"Content-Type": self._content_type(data, content_type)},
        )
        return response.headers.get("content-location", path)

    async def post(
        self, path: str, data: Any, content_type: Optional[str] = None
    ) -> str:
        response = await self._request(
            "POST",
            path,
            json=data,
            headers={"Content-Type": self._content_type(data, content_type)},
        )
        location = response.headers.get("content-location")
        if not location:
            raise StoreError(f"POST {path} returned no content-location", path=path)
        return location

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def watch(self, path: str) -> Watch:
        snapshot = await self.get(path)
        if not isinstance(snapshot, dict):
            raise StoreError(f"Cannot watch non-resource path {path}", path=path)
        active_watches.inc()
        logger.debug("watch_opened", path=path, rev=snapshot.get("_rev"))
        return PollingWatch(self, path, snapshot)
