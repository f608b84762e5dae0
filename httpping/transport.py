"""Transport selection and network-level instrumentation.

HTTP/1.1 and HTTP/2 go through httpx's own connection pool, but the pool is
handed a network backend that resolves hostnames with our :class:`Resolver`
and reports DNS, TCP, TLS and raw byte events to the current trace.  Request
phase events (connection obtained, request written, response headers seen)
come from httpcore's ``trace`` request extension.

HTTP/3 lives in :mod:`httpping.http3`, imported on demand because aioquic is
an optional dependency.
"""

from __future__ import annotations

import enum
import logging
import re
import ssl
from typing import Any, Iterable, Optional

import httpcore
import httpx

from httpping.errors import ResolutionError, TransportError
from httpping.models import Config
from httpping.resolver import Resolver, join_host_port, split_host_port
from httpping.tracing import emit

logger = logging.getLogger(__name__)


def tls_version_label(ssl_object: Any) -> str:
    """``"TLSv1.3"`` -> ``"TLS-1.3"``, ``"SSLv3"`` -> ``"SSL-3"``."""
    version = getattr(ssl_object, "version", None)
    if version is None:
        return ""
    raw = version() or ""
    if raw == "SSLv3":
        return "SSL-3"
    if raw == "TLSv1":
        return "TLS-1.0"
    if raw.startswith("TLSv"):
        return "TLS-" + raw[4:]
    return raw


# ---------------------------------------------------------------------------
# Byte accounting
# ---------------------------------------------------------------------------

class ByteCounter:
    """Raw bytes read and written by one client since the last swap."""

    def __init__(self) -> None:
        self.read = 0
        self.written = 0

    def add_read(self, nbytes: int) -> None:
        self.read += nbytes

    def add_write(self, nbytes: int) -> None:
        self.written += nbytes

    def swap(self) -> tuple[int, int]:
        """Return ``(read, written)`` and reset both to zero."""
        result = (self.read, self.written)
        self.read = 0
        self.written = 0
        return result


# ---------------------------------------------------------------------------
# Instrumented network backend
# ---------------------------------------------------------------------------

class TracingStream(httpcore.AsyncNetworkStream):
    """Wraps a network stream, reporting bytes and TLS handshakes."""

    def __init__(self, inner: httpcore.AsyncNetworkStream, remote_addr: str) -> None:
        self._inner = inner
        self.remote_addr = remote_addr

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        data = await self._inner.read(max_bytes, timeout)
        if data:
            emit("read", len(data))
        return data

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        await self._inner.write(buffer, timeout)
        emit("write", len(buffer))

    async def aclose(self) -> None:
        await self._inner.aclose()

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        emit("tls_start")
        inner = await self._inner.start_tls(ssl_context, server_hostname, timeout)
        emit("tls_done")
        return TracingStream(inner, self.remote_addr)

    def get_extra_info(self, info: str) -> Any:
        return self._inner.get_extra_info(info)


class TracingNetworkBackend(httpcore.AsyncNetworkBackend):
    """Resolves through our Resolver, then connects, reporting every step."""

    def __init__(
        self,
        resolver: Resolver,
        config: Config,
        inner: Optional[httpcore.AsyncNetworkBackend] = None,
    ) -> None:
        self._resolver = resolver
        self._config = config
        self._inner = inner if inner is not None else httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        emit("dns_start", host)
        try:
            if self._config.conn_target:
                addr = await self._resolver.resolve_conn_target(self._config.conn_target)
            else:
                addr = await self._resolver.resolve_conn_target(join_host_port(host, port))
        except Exception:
            emit("dns_done", None)
            raise
        emit("dns_done", addr)

        ip, resolved_port = split_host_port(addr)
        emit("tcp_start")
        stream = await self._inner.connect_tcp(
            ip,
            int(resolved_port),
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        emit("tcp_established")
        return TracingStream(stream, addr)

    async def connect_unix_socket(
        self,
        path: str,
        timeout: Optional[float] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        raise TransportError("unix sockets are not supported")

    async def sleep(self, seconds: float) -> None:
        await self._inner.sleep(seconds)


class HttpcoreTraceAdapter:
    """Turns httpcore ``trace`` extension callbacks into request events.

    Event names look like ``"http11.send_request_body.complete"``; only the
    part after the protocol prefix matters here.
    """

    def __init__(self) -> None:
        self._got_conn = False

    async def __call__(self, event_name: str, info: dict) -> None:
        _, _, event = event_name.partition(".")
        if event in ("send_connection_init.started", "send_request_headers.started"):
            if not self._got_conn:
                self._got_conn = True
                emit("got_conn")
        elif event == "send_request_body.complete":
            emit("wrote_request")
        elif event == "receive_response_headers.complete":
            emit("got_first_response_byte")


class TracedHTTPTransport(httpx.AsyncHTTPTransport):
    """httpx transport whose pool connects through a TracingNetworkBackend."""

    def __init__(
        self,
        config: Config,
        resolver: Resolver,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    ) -> None:
        verify = not config.no_check_certificate
        http2 = not config.http1
        limits = httpx.Limits(max_keepalive_connections=0) if config.disable_keepalive else httpx.Limits()
        super().__init__(verify=verify, http1=True, http2=http2, limits=limits, trust_env=False)

        backend = TracingNetworkBackend(resolver, config, inner=network_backend)
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=httpx.create_ssl_context(verify=verify, trust_env=False),
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            http1=True,
            http2=http2,
            network_backend=backend,
        )

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        emit("get_conn", join_host_port(request.url.host, request.url.port or _default_port(request.url)))
        request.extensions = {**request.extensions, "trace": HttpcoreTraceAdapter()}
        response = await super().handle_async_request(request)

        stream = response.extensions.get("network_stream")
        if stream is not None:
            response.extensions["remote_addr"] = getattr(stream, "remote_addr", "")
            response.extensions["tls_version"] = tls_version_label(stream.get_extra_info("ssl_object"))
        return response


def _default_port(url: httpx.URL) -> int:
    return 443 if url.scheme == "https" else 80


def build_transport(
    config: Config,
    resolver: Resolver,
    network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
) -> httpx.AsyncBaseTransport:
    """Pick the transport matching the requested HTTP version."""
    if config.http3:
        try:
            from httpping.http3 import Http3Transport
        except ImportError as exc:
            raise TransportError(
                "HTTP/3 requires the aioquic package (pip install 'httpping[http3]')"
            ) from exc
        return Http3Transport(config, resolver)
    return TracedHTTPTransport(config, resolver, network_backend=network_backend)


# ---------------------------------------------------------------------------
# Alt-Svc
# ---------------------------------------------------------------------------

_FIELD_RE = re.compile(r"^\s*([a-zA-Z0-9-]+)=(.*)$")


def parse_alt_svc_h3(value: str) -> Optional[str]:
    """Return the authority advertised for ``h3`` in an Alt-Svc value."""
    for alternative in value.split(","):
        for item in alternative.split(";"):
            match = _FIELD_RE.match(item)
            if match is None or match.group(1) != "h3":
                continue
            authority = match.group(2).strip()
            if len(authority) >= 2 and authority[0] == authority[-1] == '"':
                authority = authority[1:-1]
            return authority
    return None


def alt_svc_h3(headers: httpx.Headers) -> Optional[str]:
    for value in headers.get_list("alt-svc"):
        authority = parse_alt_svc_h3(value)
        if authority is not None:
            return authority
    return None


def upgrade_url(url: httpx.URL, authority: str) -> httpx.URL:
    """Point *url* at the advertised *authority* (``:port`` or ``host:port``)."""
    if authority.startswith(":"):
        return url.copy_with(port=int(authority[1:]))
    host, port = split_host_port(authority)
    return url.copy_with(host=host or url.host, port=int(port))


class UpgradeState(enum.Enum):
    PROBING = "probing"
    UPGRADING = "upgrading"
    DONE = "done"


class AltSvcUpgrade:
    """Decides whether a probe switches to an advertised HTTP/3 endpoint.

    At most one upgrade happens per probe: once the upgraded request has been
    inspected the machine is done, whatever that response advertises.
    """

    def __init__(self, config: Config) -> None:
        self._config = config
        self.state = UpgradeState.PROBING

    def inspect(self, url: httpx.URL, proto: str, authority: Optional[str]) -> Optional[httpx.URL]:
        """Return the URL to retry with, or ``None`` to keep the response."""
        if self.state is UpgradeState.PROBING:
            config = self._config
            if (
                authority is not None
                and proto != "HTTP/3"
                and not (config.http1 or config.http2 or config.http3)
            ):
                try:
                    target = upgrade_url(url, authority)
                except (ValueError, ResolutionError, httpx.InvalidURL) as exc:
                    logger.debug("Ignoring unusable Alt-Svc authority %r: %s", authority, exc)
                else:
                    self.state = UpgradeState.UPGRADING
                    return target
            self.state = UpgradeState.DONE
            return None

        self.state = UpgradeState.DONE
        return None
