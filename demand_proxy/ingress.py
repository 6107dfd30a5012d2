"""Accepts Stratum V1 miner connections and relays their lines to and from the translator."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import ipaddress
import logging
from enum import Enum, auto

logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 10
DEFAULT_MAX_LINE_LENGTH = 10_000
_NULL_ID = '"id":null,'


class Firmware(Enum):
    """Miner firmware, as far as the proxy needs to tell them apart."""

    LUXOR = auto()
    OTHER = auto()
    UNINITIALIZED = auto()

    def is_initialized(self) -> bool:
        return self is not Firmware.UNINITIALIZED

    def is_luxor(self) -> bool:
        return self is Firmware.LUXOR


class IngressError(Enum):
    """Why a downstream connection ended."""

    DOWNSTREAM_DROPPED = auto()
    TRANSLATOR_DROPPED = auto()
    TASK_FAILED = auto()


def detect_firmware(message: str) -> Firmware:
    """Firmware announced by a ``mining.subscribe`` message; UNINITIALIZED for other messages."""
    if "mining.subscribe" not in message:
        return Firmware.UNINITIALIZED
    return Firmware.LUXOR if "LUXminer" in message else Firmware.OTHER


def add_null_id(message: str) -> str:
    """Insert ``"id":null`` into a JSON object message that has no id field."""
    if '"id"' in message:
        return message
    pos = message.find("{")
    if pos < 0:
        return message
    return message[: pos + 1] + _NULL_ID + message[pos + 1 :]


def _peer_ip(writer: asyncio.StreamWriter):
    peer = writer.get_extra_info("peername")
    if not peer:
        return None
    try:
        return ipaddress.ip_address(peer[0])
    except (ValueError, TypeError, IndexError):
        return None


async def handle_downstream(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    downstreams: asyncio.Queue,
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    log_messages: bool = False,
) -> IngressError:
    """Serve one miner connection until either side goes away.

    A tuple ``(to_miner, from_miner, address)`` is put on ``downstreams``: the
    translator puts lines on ``to_miner`` and reads the miner's lines from
    ``from_miner``. ``None`` on either queue means that side has closed.
    """
    logger.info("spawning downstream")
    to_miner: asyncio.Queue = asyncio.Queue(maxsize=CHANNEL_CAPACITY)
    from_miner: asyncio.Queue = asyncio.Queue(maxsize=CHANNEL_CAPACITY)
    await downstreams.put((to_miner, from_miner, _peer_ip(writer)))

    firmware = Firmware.UNINITIALIZED

    async def relay_up() -> IngressError:
        nonlocal firmware
        subscribed = False
        while True:
            try:
                raw = await reader.readline()
            except (ValueError, ConnectionError, asyncio.LimitOverrunError):
                break
            if not raw:
                break
            content = raw.rstrip(b"\n").rstrip(b"\r") if raw.endswith(b"\n") else raw
            if len(content) > max_line_length:
                break
            try:
                message = content.decode("utf-8")
            except UnicodeDecodeError:
                break
            if log_messages:
                logger.info("Sending msg to upstream: %s", message)
            if not subscribed and "mining.subscribe" in message:
                subscribed = True
                firmware = detect_firmware(message)
            await from_miner.put(message)
        logger.warning("Downstream dropped while trying to send message up")
        return IngressError.DOWNSTREAM_DROPPED

    async def relay_down() -> IngressError:
        known = Firmware.UNINITIALIZED
        while True:
            message = await to_miner.get()
            if message is None:
                break
            message = message.replace("\n", "").replace("\r", "")
            if not known.is_initialized():
                known = firmware
            elif known.is_luxor():
                message = add_null_id(message)
            if log_messages:
                logger.info("Sending msg to downstream_: %s", message)
            try:
                writer.write((message + "\n").encode("utf-8"))
                await writer.drain()
            except ConnectionError:
                logger.warning("Downstream dropped while trying to send message down")
                return IngressError.DOWNSTREAM_DROPPED
        logger.error("Upstream dropped trying to receive")
        return IngressError.TRANSLATOR_DROPPED

    tasks = {asyncio.create_task(relay_up()), asyncio.create_task(relay_down())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        finished = next(iter(done))
        if finished.cancelled() or finished.exception() is not None:
            return IngressError.TASK_FAILED
        return finished.result()
    finally:
        for task in tasks:
            task.cancel()
        with contextlib.suppress(asyncio.QueueFull):
            from_miner.put_nowait(None)
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()


def _split_listen_addr(listen_addr: str) -> tuple[str, int]:
    host, sep, port_text = listen_addr.rpartition(":")
    if not sep or not port_text.isdigit() or int(port_text) > 65535:
        raise ValueError(f"Invalid listen address '{listen_addr}'")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port_text)


async def start_listen_for_downstream(
    downstreams: asyncio.Queue,
    listen_addr: str,
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    log_messages: bool = False,
) -> asyncio.Server:
    """Listen on ``host:port`` for miners; each connection is served by handle_downstream."""
    host, port = _split_listen_addr(listen_addr)
    logger.info("Trying to bind to address %s for downstream(miner) connections", listen_addr)

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.info("Try to connect %r", writer.get_extra_info("peername"))
        await handle_downstream(reader, writer, downstreams, max_line_length, log_messages)

    server = await asyncio.start_server(functools.partial(on_connect), host, port)
    logger.info("Listening for downstream connections on %s", listen_addr)
    return server