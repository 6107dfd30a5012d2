"""Proxy configuration: command line, config file and environment, plus pool lookup."""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import os
import re
import socket
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_SV1_HASHPOWER = 100e12
DEFAULT_CONFIG_PATH = "config.toml"
LOCAL_POOL_ADDRESS = "127.0.0.1:20000"
REQUEST_TIMEOUT = 15.0

_F32_MAX = 3.4028234663852886e38
_LOG_LEVELS = frozenset({"trace", "debug", "info", "warn", "error", "off"})
_UNSIGNED = re.compile(r"\+?\d+")


class PoolUrlError(Exception):
    """Raised when the pool addresses cannot be fetched or understood."""


class HashUnit(Enum):
    """Hashrate unit suffixes accepted on the command line and in config files."""

    TERA = "T"
    PETA = "P"
    EXA = "E"

    @staticmethod
    def from_str(symbol: str) -> HashUnit | None:
        """Return the unit for a suffix such as ``"T"``, or None if unknown."""
        try:
            return HashUnit(symbol)
        except ValueError:
            return None

    def multiplier(self) -> float:
        """Number of hashes per second that one of this unit stands for."""
        return _MULTIPLIERS[self]

    @staticmethod
    def format_value(value: float) -> str:
        """Format a hashrate in h/s with the largest unit that fits."""
        for unit in sorted(HashUnit, key=HashUnit.multiplier, reverse=True):
            if abs(value) >= unit.multiplier():
                return f"{value / unit.multiplier():.2f}{unit.value}"
        return f"{value:.2f}"


_MULTIPLIERS = {HashUnit.TERA: 1e12, HashUnit.PETA: 1e15, HashUnit.EXA: 1e18}


def parse_hashrate(text: str) -> float:
    """Parse a string such as ``"10T"``, ``"2.5P"`` or ``"5E"`` into h/s."""
    logger.info("Received hashrate: '%s'", text)
    text = text.strip()
    if not text:
        raise ValueError(
            "Hashrate cannot be empty. Expected format: '<number><unit>' "
            "(e.g., '10T', '2.5P', '5E'"
        )
    number_text, symbol = text[:-1], text[-1]
    try:
        if number_text != number_text.strip() or "_" in number_text:
            raise ValueError(number_text)
        number = float(number_text)
    except ValueError:
        raise ValueError(
            f"Invalid number '{number_text}'. Expected format: '<number><unit>' "
            "(e.g., '10T', '2.5P', '5E')"
        ) from None
    unit = HashUnit.from_str(symbol)
    if unit is None:
        raise ValueError(
            f"Invalid unit '{symbol}'. Expected 'T' (Terahash), 'P' (Petahash), "
            "or 'E' (Exahash). Example: '10T', '2.5P', '5E'"
        )
    hashrate = number * unit.multiplier()
    if not math.isfinite(hashrate) or abs(hashrate) > _F32_MAX:
        raise ValueError("Hashrate too large or invalid")
    logger.info("Parsed hashrate: %s h/s", hashrate)
    return hashrate


@dataclass(frozen=True)
class Configuration:
    """Resolved proxy settings."""

    token: str | None = None
    tp_address: str | None = None
    interval: int = 120_000
    delay: int = 0
    downstream_hashrate: float = DEFAULT_SV1_HASHPOWER
    loglevel: str = "info"
    nc_loglevel: str = "off"
    sv1_log: bool = False
    staging: bool = False
    testnet3: bool = False
    local: bool = False
    listening_addr: str | None = None
    api_server_port: str = "3001"
    monitor: bool = False
    auto_update: bool = True

    def environment(self) -> str:
        """Name of the environment: staging, local, testnet3 or production."""
        if self.staging:
            return "staging"
        if self.local:
            return "local"
        if self.testnet3:
            return "testnet3"
        return "production"

    def effective_loglevel(self) -> str:
        """The log level, or ``"info"`` if the configured one is not known."""
        if self.loglevel.lower() in _LOG_LEVELS:
            return self.loglevel
        print(f"Invalid log level '{self.loglevel}'. Defaulting to 'info'.", file=sys.stderr)
        return "info"

    def effective_nc_loglevel(self) -> str:
        """The noise connection log level, or ``"off"`` if it is not known."""
        if self.nc_loglevel in _LOG_LEVELS:
            return self.nc_loglevel
        print(
            f"Invalid log level for noise_connection '{self.nc_loglevel}' Defaulting to 'off'.",
            file=sys.stderr,
        )
        return "off"


_FILE_FIELDS: dict[str, type] = {
    "token": str,
    "tp_address": str,
    "interval": int,
    "delay": int,
    "downstream_hashrate": str,
    "loglevel": str,
    "nc_loglevel": str,
    "sv1_log": bool,
    "staging": bool,
    "local": bool,
    "testnet3": bool,
    "listening_addr": str,
    "api_server_port": str,
    "monitor": bool,
    "auto_update": bool,
}


def _fits(value: object, kind: type) -> bool:
    if kind is int:
        return isinstance(value, int) and not isinstance(value, bool) and value >= 0
    return isinstance(value, kind)


def _read_config_file(path: Path) -> dict[str, object]:
    """Read the TOML config file; an unreadable or ill-typed file counts as empty."""
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError):
        return {}
    if any(key in data and not _fits(data[key], kind) for key, kind in _FILE_FIELDS.items()):
        return {}
    return {key: data[key] for key in _FILE_FIELDS if key in data}


def _parse_unsigned(text: str | None) -> int | None:
    if text is None or not _UNSIGNED.fullmatch(text):
        return None
    return int(text)


def _parse_float(text: str | None) -> float | None:
    if text is None or text != text.strip() or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _first(*values):
    return next((value for value in values if value is not None), None)


def _hashrate_argument(text: str) -> float:
    try:
        return parse_hashrate(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _unsigned_argument(text: str) -> int:
    value = _parse_unsigned(text)
    if value is None:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer '{text}'")
    return value


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(allow_abbrev=False)
    parser.add_argument("--staging", action="store_true")
    parser.add_argument("--testnet3", action="store_true")
    parser.add_argument("--local", action="store_true")
    parser.add_argument("-d", "--d", dest="downstream_hashrate", type=_hashrate_argument)
    parser.add_argument("-l", "--loglevel", dest="loglevel")
    parser.add_argument("-n", "--nc", dest="noise_connection_log")
    parser.add_argument("--sv1_loglevel", action="store_true")
    parser.add_argument("--delay", type=_unsigned_argument)
    parser.add_argument("-i", "--interval", dest="adjustment_interval", type=_unsigned_argument)
    parser.add_argument("--token")
    parser.add_argument("--tp-address", dest="tp_address")
    parser.add_argument("--listening-addr", dest="listening_addr")
    parser.add_argument("-c", "--config", dest="config_file", type=Path)
    parser.add_argument("-s", "--api-server-port", dest="api_server_port")
    parser.add_argument("-m", "--monitor", action="store_true")
    parser.add_argument("-u", "--auto-update", dest="auto_update", action="store_true")
    return parser


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    default_hashrate: float = DEFAULT_SV1_HASHPOWER,
) -> Configuration:
    """Load settings with precedence: command line, then config file, then environment."""
    args = _build_parser().parse_args(argv)
    env = os.environ if env is None else env
    config_path = args.config_file if args.config_file is not None else Path(DEFAULT_CONFIG_PATH)
    file = _read_config_file(config_path)

    token = _first(args.token, file.get("token"), env.get("TOKEN"))
    logger.debug("User Token: %r", token)

    tp_address = _first(args.tp_address, file.get("tp_address"), env.get("TP_ADDRESS"))
    interval = _first(
        args.adjustment_interval, file.get("interval"), _parse_unsigned(env.get("INTERVAL")), 120_000
    )
    delay = _first(args.delay, file.get("delay"), _parse_unsigned(env.get("DELAY")), 0)

    file_hashrate = None
    if file.get("downstream_hashrate") is not None:
        try:
            file_hashrate = parse_hashrate(file["downstream_hashrate"])
        except ValueError:
            file_hashrate = None
    expected_hashrate = _first(
        args.downstream_hashrate, file_hashrate, _parse_float(env.get("DOWNSTREAM_HASHRATE"))
    )
    if expected_hashrate is not None:
        downstream_hashrate = expected_hashrate
        logger.info("Using downstream hashrate: %sh/s", HashUnit.format_value(expected_hashrate))
    else:
        downstream_hashrate = default_hashrate
        logger.warning(
            "No downstream hashrate provided, using default value: %sh/s",
            HashUnit.format_value(default_hashrate),
        )

    listening_addr = _first(
        args.listening_addr, file.get("listening_addr"), env.get("DOWNSTREAM_HASHRATE")
    )
    api_server_port = _first(
        args.api_server_port, file.get("api_server_port"), env.get("API_SERVER_PORT"), "3001"
    )
    loglevel = _first(args.loglevel, file.get("loglevel"), env.get("LOGLEVEL"), "info")
    nc_loglevel = _first(
        args.noise_connection_log, file.get("nc_loglevel"), env.get("NC_LOGLEVEL"), "off"
    )

    def flag(cli: bool, key: str, env_name: str, default: bool = False) -> bool:
        return cli or bool(file.get(key, default)) or env_name in env

    return Configuration(
        token=token,
        tp_address=tp_address,
        interval=interval,
        delay=delay,
        downstream_hashrate=downstream_hashrate,
        loglevel=loglevel,
        nc_loglevel=nc_loglevel,
        sv1_log=flag(args.sv1_loglevel, "sv1_log", "SV1_LOGLEVEL"),
        staging=flag(args.staging, "staging", "STAGING"),
        testnet3=flag(args.testnet3, "testnet3", "TESTNET3"),
        local=flag(args.local, "local", "LOCAL"),
        listening_addr=listening_addr,
        api_server_port=api_server_port,
        monitor=flag(args.monitor, "monitor", "MONITOR"),
        auto_update=flag(args.auto_update, "auto_update", "AUTO_UPDATE", default=True),
    )


def parse_address(addr: str) -> tuple[str, int] | None:
    """Resolve ``host:port`` to the first socket address, or None on failure."""
    host, sep, port_text = addr.rpartition(":")
    if not sep or not port_text.isdigit() or int(port_text) > 65535:
        logger.error("Failed to parse address: %s", addr)
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        logger.error("Failed to parse address: %s", addr)
        return None
    try:
        infos = socket.getaddrinfo(host, int(port_text), type=socket.SOCK_STREAM)
    except (OSError, UnicodeError) as exc:
        logger.error("Failed to parse address '%s': %s", addr, exc)
        return None
    if not infos:
        logger.error("Failed to parse address: %s", addr)
        return None
    sockaddr = infos[0][4]
    return sockaddr[0], sockaddr[1]


def _pool_entries(payload: object) -> list[tuple[str, int]]:
    if not isinstance(payload, list):
        raise PoolUrlError("Failed to parse pool urls: expected a list")
    entries = []
    for item in payload:
        if not isinstance(item, dict):
            raise PoolUrlError("Failed to parse pool urls: expected objects")
        host, port = item.get("host"), item.get("port")
        if not isinstance(host, str):
            raise PoolUrlError("Failed to parse pool urls: invalid host")
        if not isinstance(port, int) or isinstance(port, bool) or not 0 <= port <= 65535:
            raise PoolUrlError("Failed to parse pool urls: invalid port")
        entries.append((host, port))
    return entries


async def fetch_pool_urls(
    config: Configuration,
    base_url: str | None = None,
    retries: int = 8,
    retry_delay: float = 3.0,
) -> list[tuple[str, int]]:
    """Ask the pool service at ``base_url`` for the pool addresses."""
    if config.local:
        logger.info("Running in local mode, using hardcoded address %s", LOCAL_POOL_ADDRESS)
        address = parse_address(LOCAL_POOL_ADDRESS)
        if address is None:
            raise PoolUrlError("Invalid local address")
        return [address]
    if base_url is None:
        raise PoolUrlError(f"No pool service URL for the {config.environment()} environment")
    if config.token is None:
        raise PoolUrlError("TOKEN is not set")

    endpoint = f"{base_url}/api/pool/urls"
    logger.info("Fetching pool URLs from: %s", endpoint)
    timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        attempts_left = retries
        while True:
            try:
                response = await session.post(endpoint, json={"token": config.token})
                break
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error("Failed to fetch pool urls: %s", exc)
                if attempts_left <= 0:
                    raise PoolUrlError(f"Failed to fetch pool urls: {exc}") from exc
                attempts_left -= 1
                logger.info("Retrying in %s seconds...", retry_delay)
                await asyncio.sleep(retry_delay)

        async with response:
            logger.debug("Response status: %s", response.status)
            try:
                payload = await response.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                logger.error("Failed to parse pool urls: %s", exc)
                raise PoolUrlError(f"Failed to parse pool urls: {exc}") from exc

    entries = _pool_entries(payload)
    addresses = [
        address
        for address in (parse_address(f"{host}:{port}") for host, port in entries)
        if address is not None
    ]
    logger.info("Found %d pool addresses", len(addresses))
    logger.info("Pool addresses: %r", addresses)
    return addresses


async def pool_addresses(
    config: Configuration, base_url: str | None = None
) -> list[tuple[str, int]] | None:
    """Fetch the pool addresses, returning None and logging if that fails."""
    try:
        return await fetch_pool_urls(config, base_url)
    except PoolUrlError as exc:
        logger.error("Failed to fetch pool addresses: %s", exc)
        return None