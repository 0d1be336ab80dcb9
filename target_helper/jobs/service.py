"""
Job service: runs target jobs from the pending queue.

Each job linked into ``/bookmarks/services/target/jobs/pending`` is dispatched
to the handler registered for its ``type``. When the handler returns or
raises, the job's status and a final update are written, the pending link is
removed, and the job is filed under ``success`` or ``failure`` in that
outcome's day-index.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from target_helper.ingestion.listwatch import ListItem, ListWatcher
from target_helper.shared.observability import get_logger, job_context
from target_helper.shared.observability.metrics import (
    job_duration_seconds,
    jobs_in_flight,
    jobs_total,
)
from target_helper.shared.tasks import create_monitored_task
from target_helper.store.base import NotFoundError, ResourceStore, StoreError
from target_helper.store.tree import TARGET_JOBS, TREE

from .errors import TargetHelperError
from .models import JobStatus, UpdateStatus, now_iso

logger = get_logger(__name__)

Handler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def day_index(moment: Optional[datetime] = None) -> str:
    """UTC calendar day used to file finished jobs."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


class JobService:
    def __init__(
        self,
        store: ResourceStore,
        concurrency: int = 1,
        process_existing: bool = True,
        jobs_path: str = TARGET_JOBS,
    ):
        """
        Args:
            store: Resource store
            concurrency: Jobs handled at once
            process_existing: Run jobs already pending at start
            jobs_path: Service jobs root holding pending/success/failure
        """
        self.store = store
        self.jobs_path = jobs_path
        self.pending_path = f"{jobs_path}/pending"
        self.process_existing = process_existing
        self.handlers: Dict[str, Handler] = {}
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._list_watch: Optional[ListWatcher] = None
        self.stats = {"started": 0, "succeeded": 0, "failed": 0}

    def register(self, job_type: str, handler: Handler) -> None:
        self.handlers[job_type] = handler
        logger.info("job_handler_registered", job_type=job_type)

    async def start(self) -> None:
        await self.store.ensure(self.pending_path, {}, tree=TREE)
        self._list_watch = ListWatcher(
            self.store,
            self.pending_path,
            self._job_added,
            items=("*",),
            assume_handled=not self.process_existing,
            name="target-jobs",
        )
        await self._list_watch.start()
        logger.info("job_service_started", handlers=sorted(self.handlers))

    async def stop(self) -> None:
        if self._list_watch is not None:
            await self._list_watch.stop()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("job_service_stopped", **self.stats)

    async def wait_idle(self) -> None:
        """Wait for every dispatched job to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _job_added(self, item: ListItem) -> None:
        key = item.key
        if key in self._tasks:
            return
        task = create_monitored_task(self.run_job(key, item.id), name=f"job:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda _: self._tasks.pop(key, None))

    async def run_job(self, key: str, job_id: Optional[str] = None) -> Optional[JobStatus]:
        """
        Run one job to completion.

        Returns:
            The recorded JobStatus, or None when the job resource is missing
        """
        job_id = job_id or f"resources/{key}"
        async with self._semaphore:
            with job_context(key):
                try:
                    body = await self.store.get(f"/{job_id}")
                except NotFoundError:
                    # broken link; the reaper removes it
                    logger.warning("job_missing", job=job_id)
                    return None

                job_type = body.get("type", "unknown")
                handler = self.handlers.get(job_type)
                self.stats["started"] += 1
                await self.store.put(f"/{job_id}", {"status": JobStatus.RUNNING.value})
                logger.info("job_started", job_type=job_type)

                start = time.time()
                jobs_in_flight.inc()
                try:
                    if handler is None:
                        raise TargetHelperError(
                            f"No handler registered for job type {job_type}",
                            job_id=key,
                        )
                    await handler(key, body)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    status = JobStatus.FAILURE
                    logger.error(
                        "job_failed",
                        job_type=job_type,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    await self._finish(key, job_id, status, information=str(e))
                else:
                    status = JobStatus.SUCCESS
                    logger.info("job_succeeded", job_type=job_type)
                    await self._finish(key, job_id, status)
                finally:
                    jobs_in_flight.dec()
                    job_duration_seconds.observe(time.time() - start)

                jobs_total.labels(job_type=job_type, outcome=status.value).inc()
                self.stats["succeeded" if status is JobStatus.SUCCESS else "failed"] += 1
                return status

    async def _finish(
        self,
        key: str,
        job_id: str,
        status: JobStatus,
        information: Optional[str] = None,
    ) -> None:
        update: Dict[str, Any] = {
            "status": (
                UpdateStatus.SUCCESS.value
                if status is JobStatus.SUCCESS
                else UpdateStatus.ERROR.value
            ),
            "time": now_iso(),
        }
        if information is not None:
            update["information"] = information

        try:
            await self.store.put(f"/{job_id}", {"status": status.value})
            await self.store.post(f"/{job_id}/updates", update)
            try:
                await self.store.delete(f"{self.pending_path}/{key}")
            except NotFoundError:
                logger.debug("pending_link_already_gone")
            await self.store.put(
                f"{self.jobs_path}/{status.value}/day-index/{day_index()}",
                {key: {"_id": job_id, "_rev": 0}},
                tree=TREE,
            )
        except StoreError as e:
            logger.error("job_finish_failed", status=status.value, error=str(e))
