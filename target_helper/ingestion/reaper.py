"""
Pending job reaper: removes broken links from the target job queue.

A link is broken when the job it points at is gone or holds no content, or
when the queue entry is nothing but a bare ``{"_rev": ...}`` left behind by a
half-written link. Any of these would otherwise sit in the queue forever.
"""

import asyncio
from typing import Any, Dict

from target_helper.shared.observability import get_logger
from target_helper.shared.observability.metrics import broken_job_links_removed_total
from target_helper.store.base import NotFoundError, ResourceStore, StoreError
from target_helper.store.tree import PENDING_JOBS

log = get_logger(__name__)


class PendingJobReaper:
    """
    Background task that scans the pending queue periodically.

    Call ``reap_once()`` at startup and run ``reap_loop()`` as a monitored
    task afterwards.
    """

    def __init__(
        self,
        store: ResourceStore,
        interval_seconds: float = 600,
        enabled: bool = True,
        path: str = PENDING_JOBS,
    ):
        self.store = store
        self.interval = interval_seconds
        self.enabled = enabled
        self.path = path
        self.stats = {"scans": 0, "removed": 0, "errors": 0}

    def _is_bare(self, entry: Any) -> bool:
        return isinstance(entry, dict) and set(entry) == {"_rev"}

    async def _is_broken(self, key: str, entry: Any) -> bool:
        if self._is_bare(entry):
            return True
        if not isinstance(entry, dict) or not entry.get("_id"):
            return False
        try:
            body = await self.store.get(f"/{entry['_id']}")
        except NotFoundError:
            return True
        # a job holding only _id/_rev/_meta never got its content
        return not isinstance(body, dict) or not any(
            not k.startswith("_") for k in body
        )

    async def reap_once(self) -> Dict[str, int]:
        """
        Scan the queue once and delete broken links.

        Returns counts for this scan.
        """
        if not self.enabled:
            return {"skipped": 1}

        try:
            jobs = await self.store.get(self.path)
        except NotFoundError:
            return {"scanned": 0, "removed": 0}

        keys = [k for k in jobs if not k.startswith("_")]
        removed = 0
        for key in keys:
            try:
                if not await self._is_broken(key, jobs[key]):
                    continue
                log.info("broken_job_link_removing", key=key, path=f"{self.path}/{key}")
                await self.store.delete(f"{self.path}/{key}")
            except StoreError as e:
                self.stats["errors"] += 1
                log.warning("broken_job_link_remove_failed", key=key, error=str(e))
                continue
            removed += 1
            broken_job_links_removed_total.inc()

        self.stats["scans"] += 1
        self.stats["removed"] += removed
        log.info("reaper_cycle_complete", scanned=len(keys), removed=removed)
        return {"scanned": len(keys), "removed": removed}

    async def reap_loop(self) -> None:
        log.info("reaper_starting", interval_seconds=self.interval, enabled=self.enabled)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.reap_once()
            except Exception as e:
                log.error("reaper_error", error=str(e), stats=self.stats)

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)
