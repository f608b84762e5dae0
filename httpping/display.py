"""Rich terminal output for httpping."""

from __future__ import annotations

import math
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from httpping.measure import MEASURE_NOT_INITIALIZED, MILLISECOND, Measure
from httpping.models import Config, Measurement
from httpping.stats import Observation, PingStats, compute_stats
from httpping.tput import ThroughputSample

console = Console(highlight=False)

INDENT = " " * 10
ARROW = "   ─→     "

# Label and Measurement attribute, in display order.
PHASES = [
    ("DNS resolution", "dns_duration"),
    ("TCP handshake", "tcp_duration"),
    ("TLS handshake", "tls_duration"),
    ("QUIC handshake", "quic_duration"),
    ("request sending", "req_duration"),
    ("wait", "wait_duration"),
    ("response ingestion", "resp_duration"),
    ("total", "total_time"),
]


def _ms(measure: Measure) -> float:
    return measure.to_float(MILLISECOND)


class QuietReporter:
    """Only the final statistics."""

    def __init__(self, config: Config, out: Optional[Console] = None) -> None:
        self.config = config
        self.console = out or console

    def line(self, text: str = "", style: Optional[str] = None) -> None:
        self.console.print(text, style=style, markup=False, highlight=False, soft_wrap=True)

    def status(self, text: str) -> None:
        self.line(f"{ARROW}{text}", style="cyan")

    def redirected(self, url: str) -> None:
        self.line(f"{ARROW}Redirected to {url}\n", style="cyan")

    def on_start(self, url: str, method: str) -> None:
        pass

    def on_measure(self, measurement: Measurement, seq: int) -> None:
        pass

    def on_tick(self, sample: ThroughputSample) -> None:
        pass

    def on_close(
        self,
        url: str,
        attempts: int,
        successes: int,
        loss_rate: float,
        ping_stats: PingStats,
    ) -> None:
        self.line(f"--- {url} ping statistics ---", style="bold")
        self.line(f"{attempts} requests sent, {successes} answers received, {loss_rate:.1f}% loss")
        if successes > 0:
            self.line(str(ping_stats))


class StandardReporter(QuietReporter):
    """One line per probe."""

    def on_start(self, url: str, method: str) -> None:
        self.line(f"HTTP-PING {url} {method}\n", style="bold")

    def on_measure(self, measurement: Measurement, seq: int) -> None:
        if self.config.tput:
            return
        if measurement.is_failure:
            self.line(f"{seq:8d}: Error: {measurement.failure_cause}", style="red")
            return
        self.line(
            f"{seq:8d}: {measurement.remote_addr}, code={measurement.status_code}, "
            f"size={measurement.bytes} bytes, time={_ms(measurement.total_time):.1f} ms"
        )

    def on_tick(self, sample: ThroughputSample) -> None:
        self.line(
            f"{INDENT}throughput: {sample} queries/sec, "
            f"average latency: {sample.average_latency(MILLISECOND):.1f} ms",
            style="dim",
        )

    def on_close(self, url, attempts, successes, loss_rate, ping_stats) -> None:
        self.line()
        super().on_close(url, attempts, successes, loss_rate, ping_stats)


class VerboseReporter(StandardReporter):
    """Per-probe protocol details and latency breakdown, averaged at close."""

    def __init__(self, config: Config, out: Optional[Console] = None) -> None:
        super().__init__(config, out)
        self._sums = {attr: MEASURE_NOT_INITIALIZED for _, attr in PHASES}
        self._sums["conn_duration"] = MEASURE_NOT_INITIALIZED
        self._observations: dict[str, list[Observation]] = {attr: [] for _, attr in PHASES}
        self._tls_seen = False

    def on_measure(self, measurement: Measurement, seq: int) -> None:
        super().on_measure(measurement, seq)
        if self.config.tput or measurement.is_failure:
            return

        m = measurement
        self.line(f"{INDENT}proto={m.proto}, socket reused={_bool(m.socket_reused)}, compressed={_bool(m.compressed)}")
        self.line(f"{INDENT}network i/o: bytes read={m.in_bytes}, bytes written={m.out_bytes}")
        if m.tls_enabled:
            self.line(f"{INDENT}tls version={m.tls_version}")
            self._tls_seen = True

        for attr in self._sums:
            self._sums[attr] = self._sums[attr].sum_if_valid(getattr(m, attr))
        for _, attr in PHASES:
            self._observations[attr].append(Observation(_ms(getattr(m, attr))))

        self.line()
        self.line(f"{INDENT}latency contributions:")
        self.console.print(_contribution_tree(_durations(m), m.tls_enabled))
        self.line()

    def on_close(self, url, attempts, successes, loss_rate, ping_stats) -> None:
        super().on_close(url, attempts, successes, loss_rate, ping_stats)
        if successes == 0:
            return

        averages = {attr: total.divide(successes) for attr, total in self._sums.items()}
        self.line()
        self.line("average latency contributions:")
        self.console.print(_contribution_tree(averages, self._tls_seen))
        self.line()
        self.console.print(_phase_table(self._observations))


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _durations(m: Measurement) -> dict[str, Measure]:
    durations = {attr: getattr(m, attr) for _, attr in PHASES}
    durations["conn_duration"] = m.conn_duration
    return durations


def _contribution_tree(durations: dict[str, Measure], tls_enabled: bool) -> Tree:
    """Build the latency tree, omitting spans that were not recorded."""

    def label(measure: Measure, text: str) -> str:
        return f"{_ms(measure):6.1f} ms {text}"

    tree = Tree(label(durations["total_time"], "request and response"), guide_style="dim")

    conn = durations["conn_duration"]
    if conn.is_valid():
        setup = tree.add(label(conn, "connection setup"))
        for text, attr in PHASES[:4]:
            if attr == "tls_duration" and not tls_enabled:
                continue
            if durations[attr].is_valid():
                setup.add(label(durations[attr], text))

    for text, attr in PHASES[4:7]:
        if durations[attr].is_valid():
            tree.add(label(durations[attr], text))
    return tree


def _phase_table(observations: dict[str, list[Observation]]) -> Table:
    table = Table(title="Per-phase latency (ms)", show_lines=False)
    table.add_column("Phase", style="bold")
    for col in ("Min", "Avg", "Median", "P95", "Max", "Stdev"):
        table.add_column(col, justify="right")

    for text, attr in PHASES:
        obs = observations[attr]
        if all(math.isnan(o.value) for o in obs):
            continue
        s = compute_stats(obs)
        table.add_row(
            text,
            f"{s.min:.1f}",
            f"{s.avg:.1f}",
            f"{s.median:.1f}",
            f"{s.p95:.1f}",
            f"{s.max:.1f}",
            f"{s.stdev:.1f}",
        )
    return table


def make_reporter(config: Config, out: Optional[Console] = None) -> QuietReporter:
    if config.log_level == 0:
        return QuietReporter(config, out)
    if config.log_level >= 2:
        return VerboseReporter(config, out)
    return StandardReporter(config, out)
