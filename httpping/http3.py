"""HTTP/3 transport built on aioquic.

Only imported when HTTP/3 is requested; install the ``http3`` extra to get
aioquic.  aioquic delivers datagrams and QUIC events from protocol callbacks
that run outside the task issuing the request, so the trace context of the
request in flight is captured on the protocol instead of being read from the
task context.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import ssl
from typing import Any, AsyncIterator

import httpx
from aioquic.asyncio.client import connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.h3.connection import H3_ALPN, H3Connection
from aioquic.h3.events import DataReceived, H3Event, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ConnectionTerminated, QuicEvent

from httpping.errors import TransportError
from httpping.models import Config
from httpping.resolver import Resolver, join_host_port, split_host_port
from httpping.tracing import TraceContext, current_trace, dispatch, emit

logger = logging.getLogger(__name__)

# Connection-specific headers have no meaning in HTTP/3.
_HOP_BY_HOP = {b"host", b"connection", b"keep-alive", b"transfer-encoding", b"upgrade", b"proxy-connection"}


class _CountingDatagramTransport:
    """Forwards to the real datagram transport, reporting every datagram sent."""

    def __init__(self, inner: asyncio.DatagramTransport, protocol: H3ClientProtocol) -> None:
        self._inner = inner
        self._protocol = protocol

    def sendto(self, data: bytes, addr: Any = None) -> None:
        self._inner.sendto(data, addr)
        dispatch(self._protocol.trace, "write", len(data))

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


class _ResponseState:
    def __init__(self) -> None:
        self.headers: asyncio.Future = asyncio.get_running_loop().create_future()
        self.chunks: asyncio.Queue = asyncio.Queue()


class H3ClientProtocol(QuicConnectionProtocol):
    """One QUIC connection carrying HTTP/3 request streams."""

    def __init__(self, *args: Any, trace: TraceContext, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.trace = trace
        self._http = H3Connection(self._quic)
        self._responses: dict[int, _ResponseState] = {}
        self.closed = False

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        super().connection_made(_CountingDatagramTransport(transport, self))

    def datagram_received(self, data: bytes, addr: Any) -> None:
        dispatch(self.trace, "read", len(data))
        super().datagram_received(data, addr)

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, ConnectionTerminated):
            self.closed = True
            error = TransportError(f"QUIC connection terminated: {event.reason_phrase or event.error_code}")
            for state in self._responses.values():
                if not state.headers.done():
                    state.headers.set_exception(error)
                state.chunks.put_nowait(error)
            self._responses.clear()

        for h3_event in self._http.handle_event(event):
            self._h3_event_received(h3_event)

    def _h3_event_received(self, event: H3Event) -> None:
        state = self._responses.get(getattr(event, "stream_id", -1))
        if state is None:
            return
        if isinstance(event, HeadersReceived):
            if not state.headers.done():
                state.headers.set_result(event.headers)
        elif isinstance(event, DataReceived):
            if event.data:
                state.chunks.put_nowait(event.data)
        if getattr(event, "stream_ended", False):
            if not state.headers.done():
                state.headers.set_exception(TransportError("stream ended before response headers"))
            state.chunks.put_nowait(None)
            self._responses.pop(event.stream_id, None)

    def send_request(self, headers: list[tuple[bytes, bytes]], body: bytes) -> tuple[int, _ResponseState]:
        stream_id = self._quic.get_next_available_stream_id()
        state = self._responses[stream_id] = _ResponseState()
        self._http.send_headers(stream_id, headers, end_stream=not body)
        if body:
            self._http.send_data(stream_id, body, end_stream=True)
        self.transmit()
        return stream_id, state


class _H3ResponseStream(httpx.AsyncByteStream):
    def __init__(self, state: _ResponseState, on_close, timeout: Optional[float] = None) -> None:
        self._state = state
        self._on_close = on_close
        self._timeout = timeout

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await asyncio.wait_for(self._state.chunks.get(), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise httpx.ReadTimeout("timed out reading HTTP/3 response body") from exc
            if chunk is None:
                return
            if isinstance(chunk, Exception):
                raise httpx.ReadError(str(chunk))
            yield chunk

    async def aclose(self) -> None:
        await self._on_close()


class Http3Transport(httpx.AsyncBaseTransport):
    """httpx transport speaking HTTP/3, one QUIC connection per origin."""

    def __init__(self, config: Config, resolver: Resolver) -> None:
        self._config = config
        self._resolver = resolver
        self._connections: dict[tuple[str, int], tuple[H3ClientProtocol, contextlib.AsyncExitStack, str]] = {}

    def _quic_configuration(self, server_name: str) -> QuicConfiguration:
        configuration = QuicConfiguration(is_client=True, alpn_protocols=H3_ALPN)
        configuration.server_name = server_name
        if self._config.no_check_certificate:
            configuration.verify_mode = ssl.CERT_NONE
        return configuration

    async def _dial(self, host: str, port: int, trace: TraceContext):
        emit("dns_start", host)
        target = self._config.conn_target or join_host_port(host, port)
        try:
            addr = await self._resolver.resolve_conn_target(target)
        except Exception:
            emit("dns_done", None)
            raise
        emit("dns_done", addr)

        ip, resolved_port = split_host_port(addr)
        stack = contextlib.AsyncExitStack()
        emit("quic_start")
        try:
            protocol = await asyncio.wait_for(
                stack.enter_async_context(
                    connect(
                        ip,
                        int(resolved_port),
                        configuration=self._quic_configuration(host),
                        create_protocol=functools.partial(H3ClientProtocol, trace=trace),
                    )
                ),
                timeout=self._config.wait,
            )
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            await stack.aclose()
            raise TransportError(f"QUIC handshake with {addr} failed: {exc!r}") from exc
        emit("quic_done")
        return protocol, stack, addr

    async def _release(self, key: tuple[str, int]) -> None:
        entry = self._connections.pop(key, None)
        if entry is not None:
            await entry[1].aclose()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        trace = current_trace()
        host = request.url.host
        port = request.url.port or 443
        key = (host, port)
        emit("get_conn", join_host_port(host, port))

        entry = self._connections.get(key)
        if entry is not None and entry[0].closed:
            await self._release(key)
            entry = None
        if entry is None:
            entry = self._connections[key] = await self._dial(host, port, trace)
        protocol, _, addr = entry
        protocol.trace = trace
        emit("got_conn")

        headers = [
            (b":method", request.method.encode()),
            (b":scheme", b"https"),
            (b":authority", request.headers.get("host", request.url.netloc.decode()).encode()),
            (b":path", request.url.raw_path),
        ] + [(k.lower(), v) for k, v in request.headers.raw if k.lower() not in _HOP_BY_HOP]
        body = await request.aread()

        _, state = protocol.send_request(headers, body)
        emit("wrote_request")

        try:
            raw_headers = await asyncio.wait_for(state.headers, timeout=self._config.wait)
        except asyncio.TimeoutError as exc:
            await self._release(key)
            raise httpx.ReadTimeout("timed out waiting for HTTP/3 response headers", request=request) from exc
        emit("got_first_response_byte")

        status = 0
        response_headers = []
        for name, value in raw_headers:
            if name == b":status":
                status = int(value)
            elif not name.startswith(b":"):
                response_headers.append((name, value))

        async def on_close() -> None:
            if self._config.disable_keepalive:
                await self._release(key)

        return httpx.Response(
            status,
            headers=response_headers,
            stream=_H3ResponseStream(state, on_close, timeout=self._config.wait),
            extensions={
                "http_version": b"HTTP/3",
                "remote_addr": addr,
                "tls_version": "TLS-1.3",
            },
        )

    async def aclose(self) -> None:
        for key in list(self._connections):
            await self._release(key)
