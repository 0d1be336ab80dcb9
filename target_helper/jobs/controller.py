"""
Job lifecycle controller.

Drives a single target job to exactly one terminal outcome by watching the
job resource's ``updates`` log:

    watching --identifying--> identifying --success--> success (pipeline runs)
        |                          |------error------> error
        |                          '------timeout----> timed out
        '--success / error--> terminal

Three producers feed one event queue: the bootstrap snapshot of the job, the
live watch, and (once armed) the timeout timer. Only the first terminal event
is acted on; anything arriving after it is never read.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from target_helper.shared.observability import LoggerAdapter, get_logger
from target_helper.store.base import Change, ResourceStore, StoreError, Watch

from .errors import (
    EngineReportedError,
    JobTimeoutError,
    MalformedUpdate,
    SubscriptionFailure,
)
from .models import UpdateStatus, normalize_time, now_iso

logger = get_logger(__name__)

TIMEOUT_INFORMATION = "TimeoutError"

OnSuccess = Callable[[], Awaitable[Any]]


class LifecycleState(str, Enum):
    WATCHING = "watching"
    IDENTIFYING = "identifying"
    SUCCESS = "success"
    ERROR = "error"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (
            LifecycleState.SUCCESS,
            LifecycleState.ERROR,
            LifecycleState.TIMED_OUT,
        )


class _WatchEnded(Exception):
    pass


_CONTINUE = object()

QueueItem = Union[Change, BaseException]


class JobLifecycleController:
    """
    Watches one job resource until target reports a terminal update.

    Usage:
        controller = JobLifecycleController(store, "resources/abc", 3600, on_success)
        result = await controller.run()

    ``on_success`` is awaited after the watch is released and its return value
    becomes the result of ``run()``.
    """

    def __init__(
        self,
        store: ResourceStore,
        job_id: str,
        timeout_seconds: float,
        on_success: Optional[OnSuccess] = None,
        job_type: str = "transcription",
    ):
        self.store = store
        self.job_key = job_id.strip("/").replace("resources/", "", 1)
        self.job_id = f"resources/{self.job_key}"
        self.job_path = f"/{self.job_id}"
        self.timeout_seconds = timeout_seconds
        self.on_success = on_success
        self.job_type = job_type
        self.state = LifecycleState.WATCHING
        self.log = LoggerAdapter(logger, job_id=self.job_key, job_type=job_type)

        self._events: "asyncio.Queue[QueueItem]" = asyncio.Queue()
        self._watch: Optional[Watch] = None
        self._pump: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    async def run(self) -> Any:
        try:
            self._watch = await self.store.watch(self.job_path)
        except StoreError as e:
            raise SubscriptionFailure(
                f"Could not watch {self.job_path}: {e}", job_id=self.job_key
            ) from e

        try:
            try:
                body = await self.store.get(self.job_path)
            except StoreError as e:
                raise SubscriptionFailure(
                    f"Could not read {self.job_path}: {e}", job_id=self.job_key
                ) from e

            self.log.info("job_watch_started", timeout_seconds=self.timeout_seconds)
            # the current body goes first so updates posted before the
            # watch opened are seen
            self._events.put_nowait(Change(path="", type="merge", body=body))
            self._pump = asyncio.create_task(self._pump_watch())

            while True:
                item = await self._events.get()
                if isinstance(item, BaseException):
                    raise SubscriptionFailure(
                        f"Watch on {self.job_path} failed: {item}",
                        job_id=self.job_key,
                    ) from item
                outcome = await self._on_change(item)
                if outcome is not _CONTINUE:
                    return outcome
        finally:
            self._cancel_timer()
            await self._release()
            if self._pump is not None:
                self._pump.cancel()
                await asyncio.gather(self._pump, return_exceptions=True)

    async def _pump_watch(self) -> None:
        assert self._watch is not None
        try:
            async for change in self._watch:
                self._events.put_nowait(change)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._events.put_nowait(e)
            return
        if not self.terminal:
            self._events.put_nowait(_WatchEnded("watch closed before a terminal update"))

    async def _release(self) -> None:
        """Close the job watch. Safe to call more than once."""
        if self._watch is None or self._watch.closed:
            return
        try:
            await self._watch.close()
        except StoreError as e:
            self.log.warning("job_watch_close_failed", error=str(e))

    async def _on_change(self, change: Change) -> Any:
        if change.type != "merge" or change.path not in ("", "/"):
            return _CONTINUE
        body = change.body
        if not isinstance(body, dict) or "updates" not in body:
            return _CONTINUE

        updates = body["updates"]
        if not isinstance(updates, dict):
            self._malformed("updates is not a map", updates)

        # update keys are time sortable
        for key in sorted(updates):
            if key.startswith("_"):
                continue
            update = updates[key]
            if not isinstance(update, dict) or not isinstance(update.get("status"), str):
                self._malformed(f"update {key} has no status", update)

            update = dict(update)
            if "time" in update:
                update["time"] = normalize_time(update["time"])
            status = update["status"]
            self.log.info("job_update", update_key=key, status=status)

            if status == UpdateStatus.IDENTIFYING.value:
                self._arm_timeout()
            elif status == UpdateStatus.SUCCESS.value:
                return await self._succeed(update)
            elif status == UpdateStatus.ERROR.value:
                await self._fail(update)
            else:
                self.log.debug("job_update_ignored", update_key=key, status=status)
        return _CONTINUE

    def _malformed(self, reason: str, value: Any) -> None:
        self.state = LifecycleState.ERROR
        self.log.error("job_update_malformed", reason=reason)
        raise MalformedUpdate(
            f"Malformed update on {self.job_path}: {reason}",
            job_id=self.job_key,
            context={"value": value},
        )

    async def _succeed(self, update: Dict[str, Any]) -> Any:
        self.state = LifecycleState.SUCCESS
        self._cancel_timer()
        await self._release()
        self.log.info("job_target_success", time=update.get("time"))
        if self.on_success is None:
            return {}
        try:
            return await self.on_success()
        except Exception:
            self.state = LifecycleState.ERROR
            raise

    async def _fail(self, update: Dict[str, Any]) -> None:
        self._cancel_timer()
        await self._release()
        if update.get("information") == TIMEOUT_INFORMATION:
            self.state = LifecycleState.TIMED_OUT
            self.log.error("job_timed_out", timeout_seconds=self.timeout_seconds)
            raise JobTimeoutError(update, job_id=self.job_key)
        self.state = LifecycleState.ERROR
        self.log.error("job_target_error", information=update.get("information"))
        raise EngineReportedError(update, job_id=self.job_key)

    def _arm_timeout(self) -> None:
        if self._timer is not None or self.terminal:
            return
        self.state = LifecycleState.IDENTIFYING
        self._timer = asyncio.create_task(self._expire())
        self.log.debug("job_timeout_armed", timeout_seconds=self.timeout_seconds)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout_seconds)
        if self.terminal:
            return
        update = {
            "status": UpdateStatus.ERROR.value,
            "information": TIMEOUT_INFORMATION,
            "time": now_iso(),
        }
        key = "timeout"
        try:
            location = await self.store.post(f"{self.job_path}/updates", update)
            key = location.rstrip("/").rsplit("/", 1)[-1]
        except StoreError as e:
            self.log.warning("job_timeout_post_failed", error=str(e))
        # local delivery so a dead watch cannot hold the job open
        self._events.put_nowait(
            Change(path="", type="merge", body={"updates": {key: update}})
        )
