"""Tests for the global version allocator."""

import asyncio

import pytest

from zotesync.sync import VersionAllocator


class TestVersionAllocator:
    """Tests for VersionAllocator."""

    @pytest.mark.asyncio
    async def test_allocate_increments(self):
        allocator = VersionAllocator()

        assert await allocator.allocate() == 1
        assert await allocator.allocate() == 2
        assert await allocator.current_version() == 2

    @pytest.mark.asyncio
    async def test_seeded_from_initial(self):
        allocator = VersionAllocator(41)

        assert await allocator.allocate() == 42

    @pytest.mark.asyncio
    async def test_negative_initial_clamped(self):
        allocator = VersionAllocator(-5)

        assert await allocator.current_version() == 0

    @pytest.mark.asyncio
    async def test_advance_to_never_decreases(self):
        allocator = VersionAllocator(10)

        assert await allocator.advance_to(5) == 10
        assert await allocator.advance_to(15) == 15
        assert await allocator.allocate() == 16

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_distinct(self):
        allocator = VersionAllocator()

        versions = await asyncio.gather(*(allocator.allocate() for _ in range(50)))

        assert sorted(versions) == list(range(1, 51))

    @pytest.mark.asyncio
    async def test_reserve_holds_lock(self):
        allocator = VersionAllocator(3)

        async with allocator.reserve() as version:
            assert version == 4
            assert allocator.lock.locked()

        assert not allocator.lock.locked()
        assert await allocator.current_version() == 4

    @pytest.mark.asyncio
    async def test_reserve_serializes_writers(self):
        allocator = VersionAllocator()
        order: list[int] = []

        async def writer():
            async with allocator.reserve() as version:
                await asyncio.sleep(0)
                order.append(version)

        await asyncio.gather(*(writer() for _ in range(5)))

        # Commit order equals version order
        assert order == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_hold_peek_observe(self):
        allocator = VersionAllocator(2)

        async with allocator.hold() as held:
            assert held.peek() == 2
            assert held.observe(7) == 7
            assert held.observe(1) == 7

        assert await allocator.current_version() == 7
