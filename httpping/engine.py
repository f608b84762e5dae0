"""Probe engine: one instrumented HTTP request per :meth:`WebClient.do_measure`.

Each probe gets its own :class:`TimerRegistry`, fed by lifecycle hooks that
are attached to the ambient trace for the duration of the request:

    TOTAL         request prepared            -> body drained
    CONN          connection requested        -> connection obtained
    DNS/TCP/TLS   around the matching network steps (new connections only)
    QUIC          QUIC handshake (HTTP/3 only)
    REQ           connection obtained         -> request written
    WAIT          request written             -> response headers received
    REQ_AND_WAIT  connection obtained         -> response headers received
    RESP          response headers received   -> body drained

Probe failures never raise: they come back as failed Measurements carrying
whatever spans were recorded before things went wrong.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Callable, Optional

import httpx

from httpping.config import EXTRA_PARAMETER_NAME, PORT_MAP
from httpping.errors import (
    BODY_READ_ERROR,
    HTTP2_NOT_SUPPORTED,
    HTTP3_NOT_SUPPORTED,
    SERVER_ERROR,
    ConfigurationError,
    HttpPingError,
)
from httpping.measure import TimerRegistry, TimerType
from httpping.models import Config, Measurement, RuntimeConfig, failure
from httpping.resolver import Resolver
from httpping.tracing import HookSet, TraceContext, attach, current_trace, use_trace
from httpping.transport import AltSvcUpgrade, ByteCounter, alt_svc_h3, build_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[Config, Resolver], httpx.AsyncBaseTransport]

# Errors that make a probe fail instead of propagating.
PROBE_ERRORS = (httpx.HTTPError, HttpPingError, OSError)


def parse_target(target: str) -> httpx.URL:
    """Validate *target* as an absolute http(s) URL."""
    try:
        url = httpx.URL(target)
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"invalid target URL {target!r}: {exc}") from exc
    if url.scheme not in PORT_MAP:
        raise ConfigurationError(f"unsupported scheme in {target!r} (expected http or https)")
    if not url.host:
        raise ConfigurationError(f"missing host in {target!r}")
    return url


class _ProbeContext:
    """Timers and connection facts for a single probe."""

    def __init__(self) -> None:
        self.timers = TimerRegistry()
        self.reused = True

    def _new_connection(self) -> None:
        self.reused = False

    def hook_set(self) -> HookSet:
        t = self.timers.get

        def got_conn() -> None:
            t(TimerType.CONN).stop()
            t(TimerType.REQ).start()
            t(TimerType.REQ_AND_WAIT).start_force()

        def wrote_request() -> None:
            t(TimerType.REQ).stop()
            t(TimerType.WAIT).start()

        def got_first_response_byte() -> None:
            t(TimerType.WAIT).stop()
            t(TimerType.REQ_AND_WAIT).stop()
            t(TimerType.RESP).start()

        def tcp_start() -> None:
            self._new_connection()
            t(TimerType.TCP).start()

        def quic_start() -> None:
            self._new_connection()
            t(TimerType.QUIC).start()

        return HookSet(
            get_conn=lambda _host_port: t(TimerType.CONN).start(),
            got_conn=got_conn,
            dns_start=lambda _host: t(TimerType.DNS).start(),
            dns_done=lambda _addr: t(TimerType.DNS).stop(),
            tcp_start=tcp_start,
            tcp_established=lambda: t(TimerType.TCP).stop(),
            tls_start=lambda: t(TimerType.TLS).start(),
            tls_done=lambda: t(TimerType.TLS).stop(),
            quic_start=quic_start,
            quic_done=lambda: t(TimerType.QUIC).stop(),
            wrote_request=wrote_request,
            got_first_response_byte=got_first_response_byte,
        )


class WebClient:
    """Issues instrumented requests against one target."""

    def __init__(
        self,
        config: Config,
        runtime: Optional[RuntimeConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.config = dataclasses.replace(config)
        self.runtime = runtime or RuntimeConfig()
        self._url = parse_target(config.target)
        self._transport_factory = transport_factory or build_transport
        self._resolver = Resolver(self.config)
        self._counter = ByteCounter()
        self._byte_hooks = HookSet(read=self._counter.add_read, write=self._counter.add_write)
        self._client: Optional[httpx.AsyncClient] = None
        self._cookies_set = False

    @property
    def url(self) -> str:
        return str(self._url)

    def clone(self) -> WebClient:
        """A client for the same target sharing no connections, cache or cookies."""
        return WebClient(self.config, self.runtime, self._transport_factory)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport_factory(self.config, self._resolver),
                timeout=self.config.wait,
                trust_env=False,
            )
        return self._client

    # -- request preparation ---------------------------------------------

    def _reset_cookies(self, client: httpx.AsyncClient) -> None:
        if self._cookies_set and self.config.keep_cookies:
            return
        jar = httpx.Cookies()
        host = self._url.host
        # http.cookiejar matches dot-less hosts as "<host>.local"
        domain = host if "." in host or ":" in host else host + ".local"
        for cookie in self.config.cookies:
            jar.set(cookie.name, cookie.value, domain=domain)
        client.cookies = jar
        self._cookies_set = True

    def _build_request(self, client: httpx.AsyncClient) -> httpx.Request:
        config = self.config
        params: list[tuple[str, str]] = []
        if config.extra_param:
            params.append((EXTRA_PARAMETER_NAME, str(time.time_ns() // 1_000)))
        params.extend((p.name, p.value) for p in config.parameters)

        headers = {"User-Agent": config.user_agent}
        if config.referrer:
            headers["Referer"] = config.referrer
        if config.disable_compression:
            headers["Accept-Encoding"] = "identity"
        # "Host" is just another header here; httpx uses it as the authority.
        for header in config.headers:
            headers[header.name] = header.value

        return client.build_request(
            config.method,
            self._url,
            params=params or None,
            headers=headers,
        )

    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self.config.auth_username or self.config.auth_password:
            return httpx.BasicAuth(self.config.auth_username or "", self.config.auth_password or "")
        return None

    # -- probing -----------------------------------------------------------

    async def do_measure(self, follow_redirect: bool = False) -> Measurement:
        return await self._measure(follow_redirect, AltSvcUpgrade(self.config), current_trace())

    async def _measure(
        self,
        follow_redirect: bool,
        upgrade: AltSvcUpgrade,
        base: TraceContext,
    ) -> Measurement:
        # Every attempt, the Alt-Svc retry included, starts from the caller's trace.
        probe = _ProbeContext()
        timers = probe.timers
        context = attach(attach(base, self._byte_hooks), probe.hook_set())

        with use_trace(context):
            try:
                client = self._get_client()
                self._reset_cookies(client)
                request = self._build_request(client)

                timers.get(TimerType.TOTAL).start()
                timers.get(TimerType.REQ_AND_WAIT).start()
                response = await client.send(
                    request,
                    stream=True,
                    follow_redirects=follow_redirect,
                    auth=self._auth(),
                )
            except PROBE_ERRORS as exc:
                logger.debug("Probe of %s failed: %r", self._url, exc)
                return self._failure(str(exc) or type(exc).__name__, timers)

            try:
                if follow_redirect and response.history:
                    self._follow(response)

                proto = response.http_version
                authority = alt_svc_h3(response.headers)
                target = upgrade.inspect(response.url, proto, authority)
                if target is not None:
                    await response.aclose()
                    self.runtime.console("server advertised HTTP/3 endpoint, using HTTP/3")
                    await self._switch_to_http3(target)
                    return await self._measure(follow_redirect, upgrade, base)

                timers.get(TimerType.REQ_AND_WAIT).stop()
                timers.get(TimerType.RESP).start()
                try:
                    payload = 0
                    async for chunk in response.aiter_bytes():
                        payload += len(chunk)
                except PROBE_ERRORS as exc:
                    logger.debug("Reading payload from %s failed: %r", self._url, exc)
                    return self._failure(BODY_READ_ERROR, timers)
            finally:
                await response.aclose()

            timers.get(TimerType.RESP).stop()
            timers.get(TimerType.TOTAL).stop()

        in_bytes, out_bytes = self._counter.swap()
        cause = self._classify(response.status_code, proto)
        encoding = response.headers.get("content-encoding", "identity").lower()

        return Measurement(
            proto=proto,
            status_code=response.status_code,
            bytes=payload,
            in_bytes=in_bytes,
            out_bytes=out_bytes,
            socket_reused=probe.reused,
            compressed=encoding not in ("", "identity"),
            tls_enabled=response.url.scheme == "https",
            tls_version=response.extensions.get("tls_version", ""),
            remote_addr=response.extensions.get("remote_addr", ""),
            alt_svc_h3=authority,
            measures=timers.measure(),
            is_failure=cause is not None,
            failure_cause=cause or "",
            headers=dict(response.headers),
        )

    def _failure(self, cause: str, timers: TimerRegistry) -> Measurement:
        in_bytes, out_bytes = self._counter.swap()
        return failure(cause, timers.measure(), in_bytes=in_bytes, out_bytes=out_bytes)

    def _classify(self, status_code: int, proto: str) -> Optional[str]:
        if status_code // 100 == 5 and not self.config.ignore_server_errors:
            return SERVER_ERROR
        if self.config.http2 and proto != "HTTP/2":
            return HTTP2_NOT_SUPPORTED
        if self.config.http3 and proto != "HTTP/3":
            return HTTP3_NOT_SUPPORTED
        return None

    def _follow(self, response: httpx.Response) -> None:
        """Adopt the final URL of a redirect chain, reporting every hop."""
        hops = [r.url for r in response.history[1:]] + [response.url]
        for hop in hops:
            self.runtime.redirect_callback(str(hop))
        self._url = response.url
        self.config.target = str(response.url)

    async def _switch_to_http3(self, target: httpx.URL) -> None:
        logger.info("Switching %s to HTTP/3 at %s", self._url, target)
        same_host = target.host == self._url.host
        self.config = dataclasses.replace(self.config, http3=True, target=str(target))
        self._url = target
        if not same_host:
            self._resolver = Resolver(self.config)
        await self.aclose()
