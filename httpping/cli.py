"""CLI entry point and run loop for httpping."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import sys
from typing import Optional

import click

from httpping import __version__
from httpping.config import (
    DEFAULT_COUNT,
    DEFAULT_INTERVAL,
    DEFAULT_TPUT_REFRESH,
    DEFAULT_WAIT,
    DEFAULT_WORKERS,
    USER_AGENT,
)
from httpping.errors import ConfigurationError
from httpping.models import Config, Pair, RuntimeConfig

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class Duration(click.ParamType):
    """``500ms``, ``2s``, ``1m`` or plain seconds, converted to seconds."""

    name = "duration"

    def convert(self, value, param, ctx):
        if isinstance(value, (int, float)):
            return float(value)
        match = _DURATION_RE.match(value)
        if match is None:
            self.fail(f"{value!r} is not a valid duration (e.g. 500ms, 2s, 1m)", param, ctx)
        return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


class NameValue(click.ParamType):
    name = "NAME=VALUE"

    def __init__(self, sep: str = "=") -> None:
        self.sep = sep

    def convert(self, value, param, ctx):
        if isinstance(value, Pair):
            return value
        try:
            return Pair.parse(value, self.sep)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


def normalize_target(target: str) -> str:
    """Default to https:// when no scheme is given."""
    if "://" not in target:
        return "https://" + target
    return target


@click.command()
@click.argument("target")
@click.option("-c", "--count", default=DEFAULT_COUNT, type=click.IntRange(min=1), help="Number of requests to send [default: unlimited]")
@click.option("-i", "--interval", default=DEFAULT_INTERVAL, type=Duration(), help="Wait between requests", show_default=True)
@click.option("-w", "--wait", default=DEFAULT_WAIT, type=Duration(), help="Request timeout", show_default=True)
@click.option("-H", "--head", is_flag=True, help="Use HEAD instead of GET")
@click.option("--method", default=None, help="HTTP method (overrides --head)")
@click.option("-4", "ipv4", is_flag=True, help="Resolve IPv4 addresses only")
@click.option("-6", "ipv6", is_flag=True, help="Resolve IPv6 addresses only")
@click.option("-K", "--disable-keepalive", is_flag=True, help="Open a new connection for every request")
@click.option("-k", "--insecure", is_flag=True, help="Do not verify the server certificate")
@click.option("--cookie", "cookies", multiple=True, type=NameValue(), help="Cookie NAME=VALUE (repeatable)")
@click.option("--header", "headers", multiple=True, type=NameValue(":"), help="Header 'Name: value' (repeatable)")
@click.option("--parameter", "parameters", multiple=True, type=NameValue(), help="Query parameter NAME=VALUE (repeatable)")
@click.option("--no-server-error", is_flag=True, help="Do not count 5xx responses as failures")
@click.option("-x", "--extra-parameter", is_flag=True, help="Append a cache-busting query parameter")
@click.option("--disable-compression", is_flag=True, help="Ask the server not to compress responses")
@click.option("-a", "--audible-bell", is_flag=True, help="Ring the terminal bell on every answer")
@click.option("--referrer", default=None, help="Referer header value")
@click.option("--auth-username", default=None, help="Basic auth user name")
@click.option("--auth-password", default=None, help="Basic auth password")
@click.option("--http1", is_flag=True, help="Force HTTP/1.1")
@click.option("--http2", is_flag=True, help="Force HTTP/2")
@click.option("--http3", is_flag=True, help="Force HTTP/3 (needs the http3 extra)")
@click.option("-D", "--dns-full-resolution", is_flag=True, help="Resolve from the root servers")
@click.option("-d", "--dns-server", default=None, help="Query this DNS server directly")
@click.option("--dns-cache", is_flag=True, help="Cache DNS answers between requests")
@click.option("--keep-cookies", is_flag=True, help="Send back cookies set by previous responses")
@click.option("-F", "--follow-redirects", is_flag=True, help="Follow redirects before measuring")
@click.option("--workers", default=DEFAULT_WORKERS, type=click.IntRange(min=1), help="Concurrent workers", show_default=True)
@click.option("-t", "--throughput", is_flag=True, help="Report throughput instead of individual requests")
@click.option("--throughput-refresh", default=DEFAULT_TPUT_REFRESH, type=Duration(), help="Throughput report period", show_default=True)
@click.option("--conn-target", default=None, help="Connect to HOST:PORT instead of the URL authority")
@click.option("--user-agent", default=USER_AGENT, help="User-Agent header", show_default=True)
@click.option("-v", "--verbose", is_flag=True, help="Show protocol details and latency breakdown")
@click.option("-q", "--quiet", is_flag=True, help="Only show the final statistics")
@click.option("--debug", is_flag=True, help="Enable debug logging on stderr")
@click.version_option(version=__version__)
def main(
    target: str,
    count: int,
    interval: float,
    wait: float,
    head: bool,
    method: Optional[str],
    ipv4: bool,
    ipv6: bool,
    disable_keepalive: bool,
    insecure: bool,
    cookies: tuple[Pair, ...],
    headers: tuple[Pair, ...],
    parameters: tuple[Pair, ...],
    no_server_error: bool,
    extra_parameter: bool,
    disable_compression: bool,
    audible_bell: bool,
    referrer: Optional[str],
    auth_username: Optional[str],
    auth_password: Optional[str],
    http1: bool,
    http2: bool,
    http3: bool,
    dns_full_resolution: bool,
    dns_server: Optional[str],
    dns_cache: bool,
    keep_cookies: bool,
    follow_redirects: bool,
    workers: int,
    throughput: bool,
    throughput_refresh: float,
    conn_target: Optional[str],
    user_agent: str,
    verbose: bool,
    quiet: bool,
    debug: bool,
) -> None:
    """httpping -- measure HTTP(S) latency to TARGET.

    Sends repeated requests and reports how long each one took, with an
    optional breakdown of DNS, connection setup, TLS, server wait and
    response transfer.
    """
    if ipv4 and ipv6:
        raise click.UsageError("-4 and -6 are mutually exclusive")
    if sum((http1, http2, http3)) > 1:
        raise click.UsageError("--http1, --http2 and --http3 are mutually exclusive")

    if debug:
        _setup_logging()

    config = Config(
        target=normalize_target(target),
        method=(method or ("HEAD" if head else "GET")).upper(),
        user_agent=user_agent,
        wait=wait,
        interval=interval,
        count=count,
        workers=workers,
        ip_protocol="ip4" if ipv4 else "ip6" if ipv6 else "ip",
        conn_target=conn_target,
        disable_keepalive=disable_keepalive,
        no_check_certificate=insecure,
        disable_compression=disable_compression,
        ignore_server_errors=no_server_error,
        extra_param=extra_parameter,
        cookies=list(cookies),
        headers=list(headers),
        parameters=list(parameters),
        referrer=referrer,
        auth_username=auth_username,
        auth_password=auth_password,
        http1=http1,
        http2=http2,
        http3=http3,
        full_dns=dns_full_resolution,
        dns_server=dns_server,
        cache_dns_requests=dns_cache,
        keep_cookies=keep_cookies,
        follow_redirects=follow_redirects,
        tput=throughput,
        tput_refresh=throughput_refresh,
        log_level=0 if quiet else 2 if verbose else 1,
        audible_bell=audible_bell,
    )

    from httpping.display import console, make_reporter

    reporter = make_reporter(config)
    try:
        asyncio.run(_run(config, reporter))
    except ConfigurationError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


def _setup_logging() -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


async def _run(config: Config, reporter) -> None:
    from httpping.pinger import Pinger

    runtime = RuntimeConfig(redirect_callback=reporter.redirected, console=reporter.status)
    pinger = Pinger(config, runtime)
    try:
        await run_loop(config, pinger, reporter)
    finally:
        await pinger.aclose()


async def run_loop(config: Config, pinger, reporter) -> tuple[int, int]:
    """Consume the ping stream, feeding the reporter; return (attempts, successes)."""
    from httpping.stats import PingStats
    from httpping.tput import ThroughputWindow

    reporter.on_start(pinger.url, config.method)
    stream = pinger.ping()

    loop = asyncio.get_running_loop()
    signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stream.cancel)
            signals.append(sig)
        except (NotImplementedError, RuntimeError):
            # No signal support (Windows, or not the main thread).
            pass

    window = ThroughputWindow()
    ticker: Optional[asyncio.Task] = None
    attempts = 0
    successes = 0
    latencies = []

    try:
        async for measurement in stream:
            reporter.on_measure(measurement, attempts)
            attempts += 1
            if measurement.is_failure:
                continue

            if config.tput and ticker is None:
                window.sample()
                ticker = asyncio.create_task(_tick(window, reporter, config.tput_refresh))
            window.count(measurement.total_time)

            successes += 1
            latencies.append(measurement.total_time)
            if config.audible_bell:
                reporter.console.bell()
    finally:
        if ticker is not None:
            ticker.cancel()
        for sig in signals:
            loop.remove_signal_handler(sig)
        await stream.aclose()

    loss_rate = 100.0 * (attempts - successes) / attempts if attempts else 0.0
    reporter.on_close(pinger.url, attempts, successes, loss_rate, PingStats.from_latencies(latencies))
    return attempts, successes


async def _tick(window, reporter, period: float) -> None:
    while True:
        await asyncio.sleep(period)
        reporter.on_tick(window.sample())


if __name__ == "__main__":
    main()
