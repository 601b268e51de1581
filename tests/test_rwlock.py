"""Tests for the asyncio reader-writer lock."""

import asyncio

import pytest

from claude_run_mcp.rwlock import ReadWriteLock


class TestReadWriteLock:
    """Reader sharing, writer exclusion and writer preference."""

    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = ReadWriteLock()
        both_inside = asyncio.Event()
        inside = 0

        async def reader():
            nonlocal inside
            async with lock.read():
                inside += 1
                if inside == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(reader(), reader())
        assert lock.readers == 0

    @pytest.mark.asyncio
    async def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        log = []

        async def writer():
            async with lock.write():
                log.append("w-start")
                await asyncio.sleep(0.01)
                log.append("w-end")

        async def reader():
            await asyncio.sleep(0)
            async with lock.read():
                log.append("r")

        await asyncio.gather(writer(), reader())
        assert log == ["w-start", "w-end", "r"]

    @pytest.mark.asyncio
    async def test_writers_are_serialized(self):
        lock = ReadWriteLock()
        active = 0
        max_active = 0

        async def writer():
            nonlocal active, max_active
            async with lock.write():
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.001)
                active -= 1

        await asyncio.gather(*(writer() for _ in range(5)))
        assert max_active == 1
        assert not lock.writer_active

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []
        release_first = asyncio.Event()

        async def first_reader():
            async with lock.read():
                order.append("r1")
                await release_first.wait()

        async def writer():
            await asyncio.sleep(0.001)
            async with lock.write():
                order.append("w")

        async def late_reader():
            await asyncio.sleep(0.005)
            async with lock.read():
                order.append("r2")

        tasks = [
            asyncio.create_task(first_reader()),
            asyncio.create_task(writer()),
            asyncio.create_task(late_reader()),
        ]
        await asyncio.sleep(0.02)
        assert order == ["r1"]

        release_first.set()
        await asyncio.gather(*tasks)
        assert order == ["r1", "w", "r2"]

    @pytest.mark.asyncio
    async def test_cancelled_writer_releases_readers(self):
        lock = ReadWriteLock()
        release = asyncio.Event()

        async def holder():
            async with lock.read():
                await release.wait()

        holder_task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        async def writer():
            async with lock.write():
                pass

        writer_task = asyncio.create_task(writer())
        await asyncio.sleep(0.001)
        writer_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer_task

        async def reader():
            async with lock.read():
                return "ok"

        assert await asyncio.wait_for(reader(), timeout=1) == "ok"
        release.set()
        await holder_task
