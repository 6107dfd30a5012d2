"""CPU and memory usage of the running process."""

from __future__ import annotations

import asyncio
import os

import psutil

MINIMUM_CPU_UPDATE_INTERVAL = 0.2


async def get_cpu_and_memory_usage(interval: float | None = None) -> tuple[float, int]:
    """Return this process's CPU usage (percent, averaged over CPUs) and resident memory in bytes."""
    wait = MINIMUM_CPU_UPDATE_INTERVAL if interval is None else interval
    try:
        process = psutil.Process(os.getpid())
        process.cpu_percent(None)
        await asyncio.sleep(wait)
        cpu_usage = process.cpu_percent(None)
        memory = process.memory_info().rss
    except psutil.Error:
        return 0.0, 0
    cpu_count = psutil.cpu_count() or 0
    normalized = cpu_usage / cpu_count if cpu_count > 0 else 0.0
    return normalized, memory