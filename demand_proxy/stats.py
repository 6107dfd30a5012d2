"""Per-connection statistics kept by a single asyncio task."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


class StatsError(Exception):
    """Raised when statistics cannot be collected."""


@dataclass
class DownstreamConnectionStats:
    """Statistics of one downstream (miner) connection."""

    device_name: str | None = None
    hashrate: float = 0.0
    accepted_shares: int = 0
    rejected_shares: int = 0
    current_difficulty: float = 0.0


class _Command(Enum):
    SETUP = auto()
    HASHRATE = auto()
    DIFF = auto()
    ACCEPTED = auto()
    REJECTED = auto()
    DEVICE_NAME = auto()
    REMOVE = auto()
    GET = auto()


class StatsSender:
    """Handle that queues stat updates for a background task to apply in order."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._stats: dict[int, DownstreamConnectionStats] = {}
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start the background task; needs a running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the background task and fail any pending collection requests."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            kind, _, value = self._queue.get_nowait()
            if kind is _Command.GET and not value.done():
                value.set_exception(StatsError("stats manager stopped"))

    async def __aenter__(self) -> StatsSender:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _send(self, kind: _Command, connection_id: int, value=None) -> bool:
        try:
            self._queue.put_nowait((kind, connection_id, value))
        except asyncio.QueueFull:
            logger.warning("Failed to send command: %s for connection %s", kind.name, connection_id)
            return False
        return True

    def setup_stats(self, connection_id: int) -> None:
        self._send(_Command.SETUP, connection_id)

    def update_hashrate(self, connection_id: int, hashrate: float) -> None:
        self._send(_Command.HASHRATE, connection_id, hashrate)

    def update_diff(self, connection_id: int, diff: float) -> None:
        self._send(_Command.DIFF, connection_id, diff)

    def update_accepted_shares(self, connection_id: int) -> None:
        self._send(_Command.ACCEPTED, connection_id)

    def update_rejected_shares(self, connection_id: int) -> None:
        self._send(_Command.REJECTED, connection_id)

    def update_device_name(self, connection_id: int, name: str) -> None:
        self._send(_Command.DEVICE_NAME, connection_id, name)

    def remove_stats(self, connection_id: int) -> None:
        self._send(_Command.REMOVE, connection_id)

    async def collect_stats(self) -> dict[int, DownstreamConnectionStats]:
        """Return a snapshot of all stats once every earlier update is applied."""
        if self._task is None or self._task.done():
            raise StatsError("stats manager is not running")
        future = asyncio.get_running_loop().create_future()
        if not self._send(_Command.GET, 0, future):
            raise StatsError("failed to send stats request: queue is full")
        return await future

    async def _run(self) -> None:
        while True:
            kind, connection_id, value = await self._queue.get()
            self._apply(kind, connection_id, value)

    def _apply(self, kind: _Command, connection_id: int, value) -> None:
        if kind is _Command.SETUP:
            self._stats[connection_id] = DownstreamConnectionStats()
            return
        if kind is _Command.REMOVE:
            self._stats.pop(connection_id, None)
            return
        if kind is _Command.GET:
            if not value.done():
                value.set_result({cid: dataclasses.replace(s) for cid, s in self._stats.items()})
            return
        entry = self._stats.get(connection_id)
        if entry is None:
            return
        match kind:
            case _Command.HASHRATE:
                entry.hashrate = value
            case _Command.DIFF:
                entry.current_difficulty = value
            case _Command.ACCEPTED:
                entry.accepted_shares += 1
            case _Command.REJECTED:
                entry.rejected_shares += 1
            case _Command.DEVICE_NAME:
                entry.device_name = value