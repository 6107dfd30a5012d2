"""HTTP API exposing miner statistics and process resource usage."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass

from aiohttp import web

from demand_proxy.stats import DownstreamConnectionStats, StatsError, StatsSender
from demand_proxy.system import get_cpu_and_memory_usage

DEFAULT_PORT = "3001"


@dataclass(frozen=True)
class AggregateStats:
    """Totals over all connected miners."""

    total_connected_device: int = 0
    aggregate_hashrate: float = 0.0
    aggregate_accepted_shares: int = 0
    aggregate_rejected_shares: int = 0
    aggregate_diff: float = 0.0


def api_response_success(data=None) -> dict:
    """Body of a successful API response."""
    return {"success": True, "message": None, "data": data}


def api_response_error(message: str | None = None) -> dict:
    """Body of a failed API response."""
    return {"success": False, "message": message, "data": None}


def aggregate_stats(stats: Mapping[int, DownstreamConnectionStats]) -> AggregateStats:
    """Sum the statistics of every connection."""
    entries = list(stats.values())
    return AggregateStats(
        total_connected_device=len(entries),
        aggregate_hashrate=sum(float(s.hashrate) for s in entries),
        aggregate_accepted_shares=sum(s.accepted_shares for s in entries),
        aggregate_rejected_shares=sum(s.rejected_shares for s in entries),
        aggregate_diff=sum(float(s.current_difficulty) for s in entries),
    )


def _collect_failed(exc: Exception) -> web.Response:
    return web.json_response(
        api_response_error(f"Failed to collect stats: {exc}"), status=500
    )


def create_app(stats_sender: StatsSender) -> web.Application:
    """Build the API application serving the statistics of ``stats_sender``."""

    async def downstream_stats(request: web.Request) -> web.Response:
        try:
            stats = await stats_sender.collect_stats()
        except StatsError as exc:
            return _collect_failed(exc)
        data = {str(cid): dataclasses.asdict(s) for cid, s in stats.items()}
        return web.json_response(api_response_success(data))

    async def aggregate(request: web.Request) -> web.Response:
        try:
            stats = await stats_sender.collect_stats()
        except StatsError as exc:
            return _collect_failed(exc)
        return web.json_response(api_response_success(dataclasses.asdict(aggregate_stats(stats))))

    async def system_stats(request: web.Request) -> web.Response:
        cpu, memory = await get_cpu_and_memory_usage()
        data = {"cpu_usage_%": f"{cpu:.3f}", "memory_usage_bytes": memory}
        return web.json_response(api_response_success(data))

    app = web.Application()
    app.router.add_get("/api/stats/miners", downstream_stats)
    app.router.add_get("/api/stats/aggregate", aggregate)
    app.router.add_get("/api/stats/system", system_stats)
    return app


async def start(stats_sender: StatsSender, port: str | int = DEFAULT_PORT) -> None:
    """Serve the API on all interfaces until cancelled."""
    runner = web.AppRunner(create_app(stats_sender))
    await runner.setup()
    try:
        site = web.TCPSite(runner, "0.0.0.0", int(port))
        await site.start()
        print(f"API Server listening on port {port}")
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()