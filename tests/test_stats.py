import asyncio

import pytest

from demand_proxy.stats import DownstreamConnectionStats, StatsError, StatsSender


@pytest.mark.asyncio
async def test_setup_gives_empty_stats():
    async with StatsSender() as sender:
        sender.setup_stats(1)
        stats = await sender.collect_stats()
    assert stats == {1: DownstreamConnectionStats()}


@pytest.mark.asyncio
async def test_updates_are_applied():
    async with StatsSender() as sender:
        sender.setup_stats(7)
        sender.update_hashrate(7, 1.5e12)
        sender.update_diff(7, 512.0)
        sender.update_accepted_shares(7)
        sender.update_accepted_shares(7)
        sender.update_rejected_shares(7)
        sender.update_device_name(7, "miner-a")
        stats = await sender.collect_stats()
    assert stats[7] == DownstreamConnectionStats(
        device_name="miner-a",
        hashrate=1.5e12,
        accepted_shares=2,
        rejected_shares=1,
        current_difficulty=512.0,
    )


@pytest.mark.asyncio
async def test_updates_for_unknown_connection_are_ignored():
    async with StatsSender() as sender:
        sender.update_hashrate(3, 10.0)
        sender.update_accepted_shares(3)
        assert await sender.collect_stats() == {}


@pytest.mark.asyncio
async def test_remove_stats():
    async with StatsSender() as sender:
        sender.setup_stats(1)
        sender.setup_stats(2)
        sender.remove_stats(1)
        stats = await sender.collect_stats()
    assert list(stats) == [2]


@pytest.mark.asyncio
async def test_snapshot_is_independent():
    async with StatsSender() as sender:
        sender.setup_stats(1)
        first = await sender.collect_stats()
        sender.update_accepted_shares(1)
        second = await sender.collect_stats()
    assert first[1].accepted_shares == 0
    assert second[1].accepted_shares == 1


@pytest.mark.asyncio
async def test_collect_without_running_manager_raises():
    sender = StatsSender()
    with pytest.raises(StatsError):
        await sender.collect_stats()


@pytest.mark.asyncio
async def test_full_queue_drops_commands():
    sender = StatsSender(capacity=5)
    sender.start()
    try:
        for connection_id in range(8):
            sender.setup_stats(connection_id)
        with pytest.raises(StatsError):
            await sender.collect_stats()
        await asyncio.sleep(0)
        stats = await sender.collect_stats()
    finally:
        await sender.stop()
    assert sorted(stats) == list(range(5))