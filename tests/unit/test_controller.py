"""JobLifecycleController: terminal outcomes, timeout and malformed updates"""

import asyncio

import pytest

from target_helper.jobs.controller import JobLifecycleController, LifecycleState
from target_helper.jobs.models import normalize_time
from target_helper.jobs.errors import (
    EngineReportedError,
    JobTimeoutError,
    MalformedUpdate,
    SubscriptionFailure,
)


def _job(store, updates=None):
    return store.create_resource(
        {"type": "transcription", "service": "target", "updates": updates or {}}
    )


async def _start(store, wait_for, job, **kwargs):
    """Run a controller in the background once its watch is open."""
    controller = JobLifecycleController(store, job, kwargs.pop("timeout", 5), **kwargs)
    task = asyncio.create_task(controller.run())
    await wait_for(lambda: store.watch_count(job) == 1)
    return controller, task


class TestTerminalOutcomes:
    @pytest.mark.asyncio
    async def test_success_runs_on_success(self, store, wait_for):
        job = _job(store)
        calls = []

        async def on_success():
            calls.append(store.watch_count(job))
            return {"cois": {}}

        controller, task = await _start(store, wait_for, job, on_success=on_success)
        await store.post(f"/{job}/updates", {"status": "identifying"})
        await store.post(f"/{job}/updates", {"status": "success", "time": 1700000000})

        assert await asyncio.wait_for(task, 2) == {"cois": {}}
        # the watch is released before post-processing starts
        assert calls == [0]
        assert controller.state is LifecycleState.SUCCESS

    @pytest.mark.asyncio
    async def test_success_already_in_job(self, store):
        job = _job(store, {"a": {"status": "identifying"}, "b": {"status": "success"}})

        async def on_success():
            return {"done": True}

        controller = JobLifecycleController(store, job, 5, on_success=on_success)
        assert await asyncio.wait_for(controller.run(), 2) == {"done": True}
        assert store.watch_count(job) == 0

    @pytest.mark.asyncio
    async def test_error_update(self, store, wait_for):
        job = _job(store)
        controller, task = await _start(store, wait_for, job)
        await store.post(f"/{job}/updates", {"status": "error", "information": "bad pdf"})

        with pytest.raises(EngineReportedError) as exc_info:
            await asyncio.wait_for(task, 2)
        assert exc_info.value.information == "bad pdf"
        assert "Target returned error" in str(exc_info.value)
        assert controller.state is LifecycleState.ERROR
        assert store.watch_count(job) == 0

    @pytest.mark.asyncio
    async def test_error_update_time_is_normalized(self, store, wait_for):
        job = _job(store)
        _, task = await _start(store, wait_for, job)
        await store.post(
            f"/{job}/updates", {"status": "error", "information": "bad pdf", "time": "1700000000"}
        )

        with pytest.raises(EngineReportedError) as exc_info:
            await asyncio.wait_for(task, 2)
        assert exc_info.value.update["time"] == "2023-11-14T22:13:20+00:00"

    @pytest.mark.asyncio
    async def test_unknown_statuses_ignored(self, store, wait_for):
        job = _job(store)
        _, task = await _start(store, wait_for, job)
        await store.post(f"/{job}/updates", {"status": "identified"})
        await store.post(f"/{job}/updates", {"status": "queued-for-review"})
        await asyncio.sleep(0.02)
        assert not task.done()

        await store.post(f"/{job}/updates", {"status": "success"})
        assert await asyncio.wait_for(task, 2) == {}

    @pytest.mark.asyncio
    async def test_pipeline_failure_propagates(self, store, wait_for):
        job = _job(store)

        async def on_success():
            raise RuntimeError("pipeline broke")

        controller, task = await _start(store, wait_for, job, on_success=on_success)
        await store.post(f"/{job}/updates", {"status": "success"})
        with pytest.raises(RuntimeError, match="pipeline broke"):
            await asyncio.wait_for(task, 2)
        assert controller.state is LifecycleState.ERROR


class TestTimeout:
    @pytest.mark.asyncio
    async def test_identifying_arms_timeout(self, store, wait_for):
        job = _job(store)
        controller, task = await _start(store, wait_for, job, timeout=0.05)
        await store.post(f"/{job}/updates", {"status": "identifying"})

        with pytest.raises(JobTimeoutError) as exc_info:
            await asyncio.wait_for(task, 2)
        assert exc_info.value.information == "TimeoutError"
        assert controller.state is LifecycleState.TIMED_OUT

        updates = (await store.get(f"/{job}/updates")).values()
        posted = [u for u in updates if isinstance(u, dict) and u.get("information") == "TimeoutError"]
        assert len(posted) == 1
        assert posted[0]["status"] == "error"
        assert "time" in posted[0]

    @pytest.mark.asyncio
    async def test_no_timeout_without_identifying(self, store, wait_for):
        job = _job(store)
        _, task = await _start(store, wait_for, job, timeout=0.01)
        await asyncio.sleep(0.05)
        assert not task.done()
        await store.post(f"/{job}/updates", {"status": "success"})
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_success_before_timeout_wins(self, store, wait_for):
        job = _job(store)
        _, task = await _start(store, wait_for, job, timeout=0.05)
        await store.post(f"/{job}/updates", {"status": "identifying"})
        await store.post(f"/{job}/updates", {"status": "success"})
        assert await asyncio.wait_for(task, 2) == {}

        await asyncio.sleep(0.1)
        updates = (await store.get(f"/{job}/updates")).values()
        assert all(u.get("information") != "TimeoutError" for u in updates if isinstance(u, dict))


class TestMalformedInput:
    @pytest.mark.asyncio
    async def test_update_without_status(self, store):
        job = _job(store, {"a": {"information": "no status here"}})
        with pytest.raises(MalformedUpdate):
            await JobLifecycleController(store, job, 5).run()
        assert store.watch_count(job) == 0

    @pytest.mark.asyncio
    async def test_updates_not_a_map(self, store):
        job = store.create_resource({"type": "transcription", "updates": "oops"})
        with pytest.raises(MalformedUpdate):
            await JobLifecycleController(store, job, 5).run()

    @pytest.mark.asyncio
    async def test_non_string_status(self, store, wait_for):
        job = _job(store)
        _, task = await _start(store, wait_for, job)
        await store.post(f"/{job}/updates", {"status": 3})
        with pytest.raises(MalformedUpdate):
            await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_missing_job(self, store):
        with pytest.raises(SubscriptionFailure):
            await JobLifecycleController(store, "resources/missing", 5).run()


def test_job_id_forms(store):
    a = JobLifecycleController(store, "resources/abc", 5)
    b = JobLifecycleController(store, "abc", 5)
    assert a.job_path == b.job_path == "/resources/abc"
    assert a.job_key == "abc"


class TestNormalizeTime:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (1700000000, "2023-11-14T22:13:20+00:00"),
            ("1700000000", "2023-11-14T22:13:20+00:00"),
            (1700000000.5, "2023-11-14T22:13:20.500000+00:00"),
            ("2024-03-01T12:00:00Z", "2024-03-01T12:00:00+00:00"),
            ("2024-03-01T12:00:00", "2024-03-01T12:00:00+00:00"),
            ("2024-03-01T14:00:00+02:00", "2024-03-01T14:00:00+02:00"),
        ],
    )
    def test_parses_epoch_and_iso(self, raw, expected):
        assert normalize_time(raw) == expected

    @pytest.mark.parametrize("raw", ["yesterday-ish", "", None, True, {"at": 1}])
    def test_unparseable_kept(self, raw):
        assert normalize_time(raw) == raw
