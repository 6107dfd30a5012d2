import asyncio
import contextlib
import socket

import aiohttp
import pytest
from aiohttp import test_utils

from demand_proxy.api import (
    AggregateStats,
    aggregate_stats,
    api_response_error,
    api_response_success,
    create_app,
    start,
)
from demand_proxy.stats import DownstreamConnectionStats, StatsSender


@contextlib.asynccontextmanager
async def api_client(sender):
    client = test_utils.TestClient(test_utils.TestServer(create_app(sender)))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


def test_api_response_success():
    assert api_response_success(5) == {"success": True, "message": None, "data": 5}


def test_api_response_error():
    assert api_response_error("boom") == {"success": False, "message": "boom", "data": None}


def test_aggregate_of_nothing_is_zero():
    assert aggregate_stats({}) == AggregateStats()


def test_aggregate_of_one_entry_equals_entry():
    entry = DownstreamConnectionStats("rig", 2.5, 4, 1, 8.0)
    result = aggregate_stats({1: entry})
    assert result.total_connected_device == 1
    assert result.aggregate_hashrate == entry.hashrate
    assert result.aggregate_accepted_shares == entry.accepted_shares
    assert result.aggregate_rejected_shares == entry.rejected_shares
    assert result.aggregate_diff == entry.current_difficulty


def test_aggregate_is_order_independent():
    a = DownstreamConnectionStats(None, 1.0, 2, 0, 4.0)
    b = DownstreamConnectionStats("b", 3.0, 5, 7, 1.0)
    first = aggregate_stats({1: a, 2: b})
    assert first == aggregate_stats({2: b, 1: a})
    assert first.total_connected_device == 2


@pytest.mark.asyncio
async def test_miners_endpoint_reports_stats():
    async with StatsSender() as sender:
        sender.setup_stats(7)
        sender.update_hashrate(7, 1.5)
        sender.update_device_name(7, "rig")
        async with api_client(sender) as client:
            response = await client.get("/api/stats/miners")
            body = await response.json()
    assert response.status == 200
    assert body["success"] is True
    assert body["data"]["7"]["hashrate"] == 1.5
    assert body["data"]["7"]["device_name"] == "rig"


@pytest.mark.asyncio
async def test_aggregate_endpoint():
    async with StatsSender() as sender:
        sender.setup_stats(1)
        sender.update_accepted_shares(1)
        sender.update_rejected_shares(1)
        async with api_client(sender) as client:
            response = await client.get("/api/stats/aggregate")
            body = await response.json()
    assert response.status == 200
    assert body["data"]["total_connected_device"] == 1
    assert body["data"]["aggregate_accepted_shares"] == 1
    assert body["data"]["aggregate_rejected_shares"] == 1


@pytest.mark.asyncio
async def test_stats_failure_gives_500():
    sender = StatsSender()
    async with api_client(sender) as client:
        response = await client.get("/api/stats/aggregate")
        body = await response.json()
    assert response.status == 500
    assert body["success"] is False
    assert body["message"].startswith("Failed to collect stats:")


@pytest.mark.asyncio
async def test_system_endpoint():
    async with api_client(StatsSender()) as client:
        response = await client.get("/api/stats/system")
        body = await response.json()
    assert response.status == 200
    cpu = body["data"]["cpu_usage_%"]
    assert len(cpu.split(".")[1]) == 3
    assert float(cpu) >= 0.0
    assert body["data"]["memory_usage_bytes"] > 0


@pytest.mark.asyncio
async def test_start_serves_on_port(capsys):
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    async with StatsSender() as sender:
        task = asyncio.create_task(start(sender, port))
        try:
            body = None
            async with aiohttp.ClientSession() as session:
                for _ in range(50):
                    try:
                        async with session.get(
                            f"http://127.0.0.1:{port}/api/stats/miners"
                        ) as response:
                            body = await response.json()
                        break
                    except aiohttp.ClientConnectionError:
                        await asyncio.sleep(0.1)
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    assert body == api_response_success({})
    assert f"API Server listening on port {port}" in capsys.readouterr().out