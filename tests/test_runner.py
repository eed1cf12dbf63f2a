from __future__ import annotations

import asyncio

from labeleval.jobs.runner import InMemoryRunner


def test_runner_tracks_jobs_by_key_until_they_finish():
    async def _scenario():
        runner = InMemoryRunner()
        gate = asyncio.Event()

        async def _job():
            await gate.wait()

        runner.run("job-1", _job, job_key="eval-1")
        await asyncio.sleep(0)
        assert runner.has_active_job("eval-1")
        assert not runner.has_active_job("eval-2")

        gate.set()
        await runner.wait("eval-1")
        assert not runner.has_active_job("eval-1")
        return runner.jobs["job-1"]

    assert asyncio.run(_scenario()) == "DONE"


def test_runner_records_failures_without_raising():
    async def _scenario():
        runner = InMemoryRunner()

        async def _job():
            raise RuntimeError("pass exploded")

        runner.run("job-1", _job, job_key="eval-1")
        await runner.wait("eval-1")
        return runner

    runner = asyncio.run(_scenario())
    assert runner.jobs["job-1"] == "FAILED"
    assert runner.errors["job-1"] == "pass exploded"


def test_cancel_by_key_cancels_active_job():
    async def _scenario():
        runner = InMemoryRunner()

        async def _job():
            await asyncio.sleep(60)

        runner.run("job-1", _job, job_key="eval-1")
        await asyncio.sleep(0)
        assert runner.cancel_by_key("eval-1") is True
        await runner.wait("eval-1")
        assert runner.cancel_by_key("eval-1") is False
        return runner.jobs["job-1"]

    assert asyncio.run(_scenario()) == "CANCELED"
