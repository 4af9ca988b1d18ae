import asyncio

from core.scheduler import JobHandle, SchedulerManager


def test_interval_job_is_registered_and_cancel_is_idempotent():
    async def runner():
        manager = SchedulerManager("test")
        manager.start()

        async def job():
            pass

        handle = manager.add_interval("job-1", job, 60)
        assert manager.has_job("job-1") is True
        assert manager.get_task_status("job-1") is not None

        handle.cancel()
        handle.cancel()
        assert handle.cancelled is True
        assert manager.has_job("job-1") is False
        assert manager.get_task_status("job-1") is None

        manager.stop()
        assert manager.is_running is False

    asyncio.run(runner())


def test_adding_same_id_replaces_job():
    async def runner():
        manager = SchedulerManager("test")
        manager.start()

        async def job():
            pass

        manager.add_interval("same", job, 60)
        manager.add_interval("same", job, 120)
        assert len(manager.scheduler.get_jobs()) == 1

        manager.stop()

    asyncio.run(runner())


def test_job_failures_are_recorded_not_raised():
    async def runner():
        manager = SchedulerManager("test")
        calls = []

        async def ok():
            calls.append("ok")

        async def broken():
            raise RuntimeError("boom")

        await manager._execute_safely("ok", ok)
        await manager._execute_safely("broken", broken)
        await manager._execute_safely("broken", broken)

        assert calls == ["ok"]
        assert manager.get_task_status("ok").total_runs == 1
        broken_status = manager.get_task_status("broken")
        assert broken_status.error_count == 2
        assert broken_status.last_error == "boom"

    asyncio.run(runner())


def test_cancelling_an_unknown_job_is_harmless():
    async def runner():
        manager = SchedulerManager("test")
        manager.start()

        handle = JobHandle(manager, "never-scheduled")
        handle.cancel()

        assert handle.cancelled is True
        manager.stop()

    asyncio.run(runner())
