"""Data models for httpping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from httpping.config import (
    DEFAULT_COUNT,
    DEFAULT_INTERVAL,
    DEFAULT_TPUT_REFRESH,
    DEFAULT_WAIT,
    DEFAULT_WORKERS,
    USER_AGENT,
)
from httpping.measure import Measure, MeasuresCollection, TimerType


@dataclass(frozen=True)
class Pair:
    """A name/value pair given on the command line (cookie, header, parameter)."""

    name: str
    value: str

    @classmethod
    def parse(cls, text: str, sep: str = "=") -> Pair:
        name, found, value = text.partition(sep)
        if not found:
            raise ValueError(f"expected NAME{sep}VALUE, got {text!r}")
        return cls(name.strip(), value.strip())


Cookie = Pair
Header = Pair
Parameter = Pair


@dataclass
class Config:
    """Everything that shapes how the target is probed."""

    target: str
    method: str = "GET"
    user_agent: str = USER_AGENT
    wait: float = DEFAULT_WAIT
    interval: float = DEFAULT_INTERVAL
    count: int = DEFAULT_COUNT
    workers: int = DEFAULT_WORKERS
    ip_protocol: str = "ip"  # ip | ip4 | ip6
    conn_target: Optional[str] = None  # "host:port" to connect to instead of the URL authority

    disable_keepalive: bool = False
    no_check_certificate: bool = False
    disable_compression: bool = False
    ignore_server_errors: bool = False
    extra_param: bool = False

    cookies: list[Cookie] = field(default_factory=list)
    headers: list[Header] = field(default_factory=list)
    parameters: list[Parameter] = field(default_factory=list)
    referrer: Optional[str] = None
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None

    http1: bool = False
    http2: bool = False
    http3: bool = False

    full_dns: bool = False
    dns_server: Optional[str] = None
    cache_dns_requests: bool = False

    keep_cookies: bool = False
    follow_redirects: bool = False

    tput: bool = False
    tput_refresh: float = DEFAULT_TPUT_REFRESH
    log_level: int = 1  # 0 quiet, 1 standard, 2 verbose
    audible_bell: bool = False


def _ignore(_: str) -> None:
    return None


@dataclass
class RuntimeConfig:
    """Sinks the core reports to; never touches the terminal itself."""

    redirect_callback: Callable[[str], None] = _ignore
    console: Callable[[str], None] = _ignore


@dataclass(frozen=True)
class Measurement:
    """The outcome of one probe."""

    proto: str = ""
    status_code: int = 0
    bytes: int = 0  # payload, after decoding
    in_bytes: int = 0  # raw bytes read from the network
    out_bytes: int = 0  # raw bytes written to the network
    socket_reused: bool = False
    compressed: bool = False
    tls_enabled: bool = False
    tls_version: str = ""
    remote_addr: str = ""
    alt_svc_h3: Optional[str] = None
    measures: MeasuresCollection = field(default_factory=MeasuresCollection)
    is_failure: bool = False
    failure_cause: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def total_time(self) -> Measure:
        return self.measures.get(TimerType.TOTAL)

    @property
    def conn_duration(self) -> Measure:
        return self.measures.get(TimerType.CONN)

    @property
    def dns_duration(self) -> Measure:
        return self.measures.get(TimerType.DNS)

    @property
    def tcp_duration(self) -> Measure:
        return self.measures.get(TimerType.TCP)

    @property
    def tls_duration(self) -> Measure:
        return self.measures.get(TimerType.TLS)

    @property
    def quic_duration(self) -> Measure:
        return self.measures.get(TimerType.QUIC)

    @property
    def req_duration(self) -> Measure:
        return self.measures.get(TimerType.REQ)

    @property
    def wait_duration(self) -> Measure:
        return self.measures.get(TimerType.WAIT)

    @property
    def resp_duration(self) -> Measure:
        return self.measures.get(TimerType.RESP)

    @property
    def req_and_wait_duration(self) -> Measure:
        return self.measures.get(TimerType.REQ_AND_WAIT)


def failure(cause: str, measures: Optional[MeasuresCollection] = None, **kwargs) -> Measurement:
    """Build a failed Measurement carrying whatever spans were recorded."""
    return Measurement(
        is_failure=True,
        failure_cause=cause,
        measures=measures if measures is not None else MeasuresCollection(),
        **kwargs,
    )
