# demand-proxy

Building blocks for a Stratum V1 mining proxy, written on `asyncio`:

- **`demand_proxy.config`**: settings gathered from command-line arguments,
  a TOML file and environment variables; hashrate strings such as `10T`,
  `2.5P` or `5E`; and fetching the list of pool addresses from a pool service.
- **`demand_proxy.ingress`**: a line-based TCP listener for downstream (SV1)
  miners. Each connection is handed over as a pair of queues plus the peer's
  IP address.
- **`demand_proxy.stats`**: per-connection statistics kept by one background
  task.
- **`demand_proxy.system`**: CPU and memory use of the running process.
- **`demand_proxy.api`**: an aiohttp application with JSON endpoints for
  per-miner statistics, aggregate statistics and system usage.

## Configuration

```python
from demand_proxy.config import load_config, parse_hashrate

config = load_config(["--token", "token", "-d", "100T"], env={}, default_hashrate=parse_hashrate("10T"))
print(config.environment())          # "production"
print(config.effective_loglevel())   # "info"
```

`load_config(argv=None, env=None, default_hashrate=...)` parses `argv`
(`sys.argv` when `None`), reads the TOML file named by `-c/--config`
(`config.toml` in the current directory by default) and falls back to `env`
(`os.environ` when `None`). For each setting the command line wins over the
file, and the file over the environment. A file that cannot be read, is not
valid TOML or holds a value of the wrong type is treated as empty.

Command-line options: `--staging`, `--testnet3`, `--local`, `-d/--d`
(hashrate), `-l/--loglevel`, `-n/--nc` (noise-connection log level),
`--sv1_loglevel`, `--delay`, `-i/--interval`, `--token`, `--tp-address`,
`--listening-addr`, `-c/--config`, `-s/--api-server-port`, `-m/--monitor`
and `-u/--auto-update`.

Environment variables: `TOKEN`, `TP_ADDRESS`, `INTERVAL`, `DELAY`,
`DOWNSTREAM_HASHRATE`, `API_SERVER_PORT`, `LOGLEVEL`, `NC_LOGLEVEL`, and the
flags `SV1_LOGLEVEL`, `STAGING`, `TESTNET3`, `LOCAL`, `MONITOR` and
`AUTO_UPDATE`, which count as set whenever the variable exists.

Defaults: interval 120000, delay 0, API port `"3001"`, log level `info`,
noise-connection log level `off`, `auto_update` on, and the
`default_hashrate` passed in (100 TH/s unless given).

The resulting `Configuration` is a frozen dataclass. `environment()` returns
`"staging"`, `"local"`, `"testnet3"` or `"production"`, checked in that order.
`effective_loglevel()` and `effective_nc_loglevel()` return the configured
level, or `"info"` / `"off"` after printing a warning to stderr when the level
is not one of `trace`, `debug`, `info`, `warn`, `error`, `off`.

`parse_hashrate` takes a number followed by one unit letter (`T`, `P` or `E`,
see `HashUnit`) and returns hashes per second; an empty string, a bad number,
an unknown unit or a result that is too large raises `ValueError`.
`HashUnit.format_value` formats a value with the largest unit that fits, for
example `"1.50T"`.

### Pool addresses

`fetch_pool_urls(config, base_url, retries=8, retry_delay=3.0)` posts
`{"token": ...}` to `<base_url>/api/pool/urls` and resolves each returned
`host`/`port` pair with `parse_address`, dropping those that do not resolve.
Connection failures are retried; giving up, a malformed reply, a missing
token or a missing `base_url` raise `PoolUrlError`. With `config.local` set it
returns `127.0.0.1:20000` without any request. `pool_addresses` does the same
but logs the error and returns `None` instead of raising.

## Statistics

```python
import asyncio
from demand_proxy.stats import StatsSender

async def run():
    async with StatsSender() as stats:
        stats.setup_stats(1)
        stats.update_hashrate(1, 1.5e12)
        stats.update_accepted_shares(1)
        print(await stats.collect_stats())

asyncio.run(run())
```

Updates are queued (capacity 100; when full, the update is dropped with a
warning) and applied in order by the background task. Updates to a connection
that was never set up are ignored. `collect_stats()` returns a copy of every
`DownstreamConnectionStats` once earlier updates are applied, and raises
`StatsError` if the task is not running or the queue is full.

## HTTP API

`create_app(stats_sender)` builds an `aiohttp.web.Application`;
`start(stats_sender, port="3001")` serves it on all interfaces until
cancelled.

| Path                   | Returns                                             |
|------------------------|-----------------------------------------------------|
| `/api/stats/miners`    | statistics of every connection, keyed by its id     |
| `/api/stats/aggregate` | connection count and summed hashrate, shares, diff  |
| `/api/stats/system`    | `cpu_usage_%` (string, 3 decimals) and `memory_usage_bytes` |

Every reply has the shape `{"success": ..., "message": ..., "data": ...}`; a
failed statistics collection answers with status 500 and
`"Failed to collect stats: ..."`.

## Accepting miners

```python
import asyncio
from demand_proxy.ingress import start_listen_for_downstream

async def run():
    downstreams = asyncio.Queue()
    server = await start_listen_for_downstream(downstreams, "0.0.0.0:32767")
    to_miner, from_miner, address = await downstreams.get()
    print(address, await from_miner.get())

asyncio.run(run())
```

Lines from the miner appear on `from_miner`; lines put on `to_miner` are sent
to the miner. `None` on either queue means that side has closed. A line longer
than `max_line_length` (10000 by default) ends the connection. The firmware is
taken from the first `mining.subscribe` message (`detect_firmware`); for
LUXminer devices, outgoing messages without an `"id"` field get `"id":null`
inserted (`add_null_id`). `handle_downstream` returns an `IngressError`
saying which side dropped.

## What this package does not do

It has no program to run: nothing ties the pieces together, translates
miner traffic to an upstream pool or connects to a pool. The API has no
health-check or pool-information endpoint, and there are no built-in pool
service URLs: callers pass `base_url` themselves. The `monitor` and
`auto_update` settings are only read, not acted upon.

## Tests

The test suite uses pytest and pytest-asyncio, available through the `test`
extra.