"""
tests/test_transport.py
Network instrumentation, Alt-Svc parsing and the HTTP/3 upgrade state machine.
Run: pytest tests/test_transport.py -v
"""

import dataclasses
import sys

import httpcore
import httpx
import pytest

from httpping.errors import TransportError
from httpping.models import Config
from httpping.resolver import Resolver
from httpping.tracing import EMPTY_TRACE, HookSet, attach, use_trace
from httpping.transport import (
    AltSvcUpgrade,
    ByteCounter,
    TracedHTTPTransport,
    UpgradeState,
    alt_svc_h3,
    build_transport,
    parse_alt_svc_h3,
    tls_version_label,
    upgrade_url,
)

RESPONSE = [
    b"HTTP/1.1 200 OK\r\n",
    b"Content-Type: text/plain\r\n",
    b"Content-Length: 13\r\n",
    b"\r\n",
    b"Hello, world!",
]

REQUEST_EVENTS = [
    "get_conn",
    "dns_start",
    "dns_done",
    "tcp_start",
    "tcp_established",
    "got_conn",
    "wrote_request",
    "got_first_response_byte",
]


def recorder(events):
    """A hook set recording the name of every event it receives."""
    names = [f.name for f in dataclasses.fields(HookSet)]
    return HookSet(**{n: (lambda *args, n=n: events.append(n)) for n in names})


def make_transport(config):
    return TracedHTTPTransport(
        config,
        Resolver(config),
        network_backend=httpcore.AsyncMockBackend(RESPONSE),
    )


# ── instrumentation ───────────────────────────────────────────────────────────

class TestTracedTransport:

    @pytest.mark.asyncio
    async def test_plain_http_event_order(self):
        events = []
        config = Config(target="http://192.0.2.1/")
        with use_trace(attach(EMPTY_TRACE, recorder(events))):
            async with httpx.AsyncClient(transport=make_transport(config)) as client:
                response = await client.get("http://192.0.2.1/")

        assert response.status_code == 200
        assert response.text == "Hello, world!"
        assert [e for e in events if e not in ("read", "write")] == REQUEST_EVENTS
        assert response.extensions["remote_addr"] == "192.0.2.1:80"

    @pytest.mark.asyncio
    async def test_tls_events_around_handshake(self):
        events = []
        config = Config(target="https://192.0.2.1/", http1=True)
        with use_trace(attach(EMPTY_TRACE, recorder(events))):
            async with httpx.AsyncClient(transport=make_transport(config)) as client:
                await client.get("https://192.0.2.1/")

        assert events.index("tcp_established") < events.index("tls_start") < events.index("tls_done")
        assert events.index("tls_done") < events.index("got_conn")

    @pytest.mark.asyncio
    async def test_byte_counts(self):
        counter = ByteCounter()
        hooks = HookSet(read=counter.add_read, write=counter.add_write)
        config = Config(target="http://192.0.2.1/")
        with use_trace(attach(EMPTY_TRACE, hooks)):
            async with httpx.AsyncClient(transport=make_transport(config)) as client:
                await client.get("http://192.0.2.1/")

        read, written = counter.swap()
        assert read == sum(len(chunk) for chunk in RESPONSE)
        assert written > 0
        assert counter.swap() == (0, 0)

    @pytest.mark.asyncio
    async def test_conn_target_overrides_authority(self):
        events = []
        hooks = HookSet(dns_done=events.append)
        config = Config(target="http://example.com/", conn_target="192.0.2.9:8080")
        with use_trace(attach(EMPTY_TRACE, hooks)):
            async with httpx.AsyncClient(transport=make_transport(config)) as client:
                response = await client.get("http://example.com/")

        assert events == ["192.0.2.9:8080"]
        assert response.extensions["remote_addr"] == "192.0.2.9:8080"

    @pytest.mark.asyncio
    async def test_keepalive_disabled_reconnects(self):
        events = []
        config = Config(target="http://192.0.2.1/", disable_keepalive=True)
        with use_trace(attach(EMPTY_TRACE, recorder(events))):
            async with httpx.AsyncClient(transport=make_transport(config)) as client:
                await client.get("http://192.0.2.1/")
                await client.get("http://192.0.2.1/")

        assert events.count("tcp_start") == 2

    def test_http3_without_aioquic(self, monkeypatch):
        # None in sys.modules makes the import fail as if aioquic were missing
        monkeypatch.setitem(sys.modules, "httpping.http3", None)
        config = Config(target="https://192.0.2.1/", http3=True)
        with pytest.raises(TransportError, match="aioquic"):
            build_transport(config, Resolver(config))


class TestHelpers:

    def test_tls_version_label(self):
        class SSLObject:
            def __init__(self, v):
                self.v = v

            def version(self):
                return self.v

        assert tls_version_label(SSLObject("TLSv1.3")) == "TLS-1.3"
        assert tls_version_label(SSLObject("TLSv1.2")) == "TLS-1.2"
        assert tls_version_label(SSLObject("TLSv1")) == "TLS-1.0"
        assert tls_version_label(SSLObject("SSLv3")) == "SSL-3"
        assert tls_version_label(None) == ""


# ── Alt-Svc ───────────────────────────────────────────────────────────────────

class TestAltSvcParsing:

    def test_port_only(self):
        assert parse_alt_svc_h3('h3=":443"; ma=86400') == ":443"

    def test_among_alternatives(self):
        assert parse_alt_svc_h3('h3-29=":443"; ma=3600, h3=":8443"; ma=3600') == ":8443"

    def test_quoted_host_and_port(self):
        assert parse_alt_svc_h3('h3="alt.example.com:8443"; ma=86400') == "alt.example.com:8443"
        url = upgrade_url(httpx.URL("https://example.com/path"), "alt.example.com:8443")
        assert str(url) == "https://alt.example.com:8443/path"

    def test_unquoted(self):
        assert parse_alt_svc_h3("h3=alt.example.com:443") == "alt.example.com:443"

    def test_absent(self):
        assert parse_alt_svc_h3('h2="alt.example.com:443"') is None
        assert parse_alt_svc_h3("clear") is None

    def test_scans_every_header_value(self):
        headers = httpx.Headers([("alt-svc", "clear"), ("alt-svc", 'h3=":443"')])
        assert alt_svc_h3(headers) == ":443"
        assert alt_svc_h3(httpx.Headers()) is None

    def test_upgrade_url_port_only(self):
        url = upgrade_url(httpx.URL("https://example.com/path?q=1"), ":8443")
        assert str(url) == "https://example.com:8443/path?q=1"

    def test_upgrade_url_authority(self):
        url = upgrade_url(httpx.URL("https://example.com/path?q=1"), "alt.example.net:443")
        assert str(url) == "https://alt.example.net/path?q=1"


class TestAltSvcUpgrade:

    URL = httpx.URL("https://example.com/")

    def test_upgrades_once(self):
        machine = AltSvcUpgrade(Config(target=str(self.URL)))
        target = machine.inspect(self.URL, "HTTP/2", ":443")
        assert target == self.URL
        assert machine.state is UpgradeState.UPGRADING

        assert machine.inspect(self.URL, "HTTP/2", ":443") is None
        assert machine.state is UpgradeState.DONE
        assert machine.inspect(self.URL, "HTTP/2", ":443") is None

    def test_forced_version_prevents_upgrade(self):
        for flag in ("http1", "http2", "http3"):
            machine = AltSvcUpgrade(Config(target=str(self.URL), **{flag: True}))
            assert machine.inspect(self.URL, "HTTP/1.1", ":443") is None
            assert machine.state is UpgradeState.DONE

    def test_already_http3(self):
        machine = AltSvcUpgrade(Config(target=str(self.URL)))
        assert machine.inspect(self.URL, "HTTP/3", ":443") is None

    def test_no_advertisement(self):
        machine = AltSvcUpgrade(Config(target=str(self.URL)))
        assert machine.inspect(self.URL, "HTTP/1.1", None) is None
        assert machine.state is UpgradeState.DONE

    def test_unusable_authority_ignored(self):
        machine = AltSvcUpgrade(Config(target=str(self.URL)))
        assert machine.inspect(self.URL, "HTTP/1.1", "no-port-here") is None
