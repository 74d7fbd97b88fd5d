"""Tests for fire-and-forget background tasks."""

import asyncio
import logging

import pytest

from ordergate.services.background import BackgroundTasks


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_spawned_task_runs(self):
        tasks = BackgroundTasks()
        done = []

        async def work():
            done.append(True)

        tasks.spawn(work(), "append")
        await tasks.drain()

        assert done == [True]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        tasks = BackgroundTasks()

        async def boom():
            raise RuntimeError("write failed")

        with caplog.at_level(logging.ERROR, logger="ordergate.services.background"):
            tasks.spawn(boom(), "name capture")
            await tasks.drain()

        assert "Background task failed: name capture" in caplog.text

    @pytest.mark.asyncio
    async def test_spawn_does_not_wait(self):
        tasks = BackgroundTasks()
        release = asyncio.Event()

        async def wait_for_release():
            await release.wait()

        task = tasks.spawn(wait_for_release(), "blocked")

        assert not task.done()
        assert len(tasks) == 1
        release.set()
        await tasks.drain()
        assert task.done()
