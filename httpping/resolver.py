"""Hostname resolution with a selectable strategy.

Three strategies are available, tried in this order of preference:

* full resolution -- iterate from the root servers ourselves, following
  referrals and CNAME chains (``Config.full_dns``);
* a specific DNS server queried directly (``Config.dns_server``);
* the system resolver (``getaddrinfo``).

IP literals never hit the network, whatever the strategy.  When
``Config.cache_dns_requests`` is set, successful answers are remembered for
the lifetime of the :class:`Resolver`; failures are never cached.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Optional

import dns.asyncquery
import dns.exception
import dns.message
import dns.name
import dns.rcode
import dns.rdatatype

from httpping.config import (
    DNS_PORT,
    DNS_QUERY_TIMEOUT,
    MAX_CNAME_CHAIN,
    MAX_REFERRALS,
    ROOT_SERVERS,
)
from httpping.errors import ConfigurationError, ResolutionError
from httpping.models import Config

logger = logging.getLogger(__name__)

_FAMILIES = {
    "ip": socket.AF_UNSPEC,
    "ip4": socket.AF_INET,
    "ip6": socket.AF_INET6,
}


# ---------------------------------------------------------------------------
# host:port helpers
# ---------------------------------------------------------------------------

def split_host_port(host_and_port: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[v6]:port`` into its two parts."""
    if host_and_port.startswith("["):
        end = host_and_port.find("]")
        if end < 0 or host_and_port[end + 1:end + 2] != ":":
            raise ResolutionError(f"address {host_and_port}: missing port in address")
        return host_and_port[1:end], host_and_port[end + 2:]
    host, sep, port = host_and_port.rpartition(":")
    if not sep or ":" in host:
        raise ResolutionError(f"address {host_and_port}: missing port in address")
    return host, port


def join_host_port(host: str, port: int | str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _ip_literal(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def _no_such_host(host: str) -> ResolutionError:
    return ResolutionError(f"lookup {host}: no such host")


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class Resolver:
    """Resolves hostnames according to a :class:`Config`."""

    def __init__(self, config: Config) -> None:
        self.config = config
        self._cache: dict[str, str] = {}

        if config.dns_server is not None and _ip_literal(config.dns_server) is None:
            raise ConfigurationError(
                f"invalid DNS server address: {config.dns_server!r}"
            )
        if config.ip_protocol not in _FAMILIES:
            raise ConfigurationError(f"invalid IP protocol: {config.ip_protocol!r}")

    async def resolve_conn_target(self, host_and_port: str) -> str:
        """Resolve the host part of *host_and_port*, keeping the port."""
        host, port = split_host_port(host_and_port)
        return join_host_port(await self.resolve(host), port)

    async def resolve(self, hostname: str) -> str:
        cached = self._cache.get(hostname)
        if cached is not None:
            return cached

        address = await self._resolve(hostname)

        if self.config.cache_dns_requests:
            self._cache[hostname] = address
        return address

    async def _resolve(self, hostname: str) -> str:
        literal = _ip_literal(hostname)
        if literal is not None:
            return literal

        if self.config.full_dns:
            logger.debug("Resolving %s from the root servers", hostname)
            address = await self._resolve_full(hostname)
        elif self.config.dns_server:
            logger.debug("Resolving %s via %s", hostname, self.config.dns_server)
            address = await self._resolve_with_server(hostname, self.config.dns_server)
        else:
            logger.debug("Resolving %s via the system resolver", hostname)
            address = await self._resolve_system(hostname)

        if address is None:
            raise _no_such_host(hostname)
        return address

    def _rdtypes(self) -> list[dns.rdatatype.RdataType]:
        """Record types to query, most preferred first."""
        if self.config.ip_protocol == "ip4":
            return [dns.rdatatype.A]
        if self.config.ip_protocol == "ip6":
            return [dns.rdatatype.AAAA]
        return [dns.rdatatype.AAAA, dns.rdatatype.A]

    # -- system ---------------------------------------------------------

    async def _resolve_system(self, hostname: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                hostname,
                None,
                family=_FAMILIES[self.config.ip_protocol],
                type=socket.SOCK_STREAM,
            )
        except socket.gaierror as exc:
            raise ResolutionError(f"lookup {hostname}: {exc}") from exc
        for _family, _type, _proto, _canon, sockaddr in infos:
            return sockaddr[0]
        return None

    # -- specific server ------------------------------------------------

    async def _resolve_with_server(self, hostname: str, server: str) -> Optional[str]:
        rdtypes = self._rdtypes()
        if len(rdtypes) == 1:
            addresses = await self._query_server(hostname, rdtypes[0], server)
            return addresses[0] if addresses else None

        # Dual stack: both queries in flight, AAAA wins when it has an answer.
        aaaa = asyncio.ensure_future(self._query_server(hostname, dns.rdatatype.AAAA, server))
        a = asyncio.ensure_future(self._query_server(hostname, dns.rdatatype.A, server))
        try:
            try:
                v6 = await aaaa
            except ResolutionError as exc:
                logger.debug("AAAA lookup for %s failed: %s", hostname, exc)
                v6 = []
            if v6:
                return v6[0]
            v4 = await a
            return v4[0] if v4 else None
        finally:
            a.cancel()
            aaaa.cancel()

    async def _query_server(
        self,
        hostname: str,
        rdtype: dns.rdatatype.RdataType,
        server: str,
    ) -> list[str]:
        query = dns.message.make_query(hostname, rdtype)
        try:
            response, _ = await dns.asyncquery.udp_with_fallback(
                query, server, timeout=self.config.wait or DNS_QUERY_TIMEOUT, port=DNS_PORT
            )
        except (dns.exception.DNSException, OSError) as exc:
            raise ResolutionError(f"lookup {hostname} on {server}: {exc}") from exc
        return _addresses(response, rdtype)

    # -- full resolution ------------------------------------------------

    async def _resolve_full(self, hostname: str) -> Optional[str]:
        rdtypes = self._rdtypes()
        if len(rdtypes) == 1:
            return await self._chase(hostname, rdtypes[0])

        v6, v4 = await asyncio.gather(
            self._chase(hostname, dns.rdatatype.AAAA),
            self._chase(hostname, dns.rdatatype.A),
            return_exceptions=True,
        )
        for result in (v6, v4):
            if isinstance(result, str):
                return result
        for result in (v6, v4):
            if isinstance(result, BaseException) and not isinstance(result, ResolutionError):
                raise result
        return None

    async def _chase(self, hostname: str, rdtype: dns.rdatatype.RdataType) -> Optional[str]:
        """Resolve *hostname* iteratively, following CNAMEs."""
        seen: set[dns.name.Name] = set()
        qname = dns.name.from_text(hostname)

        while len(seen) < MAX_CNAME_CHAIN:
            seen.add(qname)
            answer = await self._iterate(qname, rdtype)
            addresses = _addresses_from_rrsets(answer, rdtype)
            if addresses:
                return addresses[0]

            target = _cname_target(answer, qname)
            if target is None or target in seen:
                return None
            logger.debug("Following CNAME %s -> %s", qname, target)
            qname = target
        return None

    async def _iterate(
        self,
        qname: dns.name.Name,
        rdtype: dns.rdatatype.RdataType,
        depth: int = 0,
    ) -> list:
        """Walk the delegation tree from the roots and return the answer section."""
        servers = list(ROOT_SERVERS)

        for _ in range(MAX_REFERRALS):
            response = await self._ask_any(qname, rdtype, servers)
            if response.answer:
                return list(response.answer)
            if response.rcode() != dns.rcode.NOERROR:
                return []

            ns_names = [
                rr.target
                for rrset in response.authority
                if rrset.rdtype == dns.rdatatype.NS
                for rr in rrset
            ]
            if not ns_names:
                return []

            glue = [
                rr.address
                for rrset in response.additional
                if rrset.rdtype == dns.rdatatype.A and rrset.name in ns_names
                for rr in rrset
            ]
            if not glue:
                if depth >= MAX_REFERRALS:
                    return []
                glue = await self._resolve_ns(ns_names, depth + 1)
                if not glue:
                    return []
            servers = glue

        raise ResolutionError(f"lookup {qname}: too many referrals")

    async def _resolve_ns(self, ns_names: list, depth: int) -> list[str]:
        """Resolve glue-less name servers, stopping at the first that works."""
        for ns_name in ns_names:
            try:
                answer = await self._iterate(ns_name, dns.rdatatype.A, depth)
            except ResolutionError as exc:
                logger.debug("Name server %s unresolvable: %s", ns_name, exc)
                continue
            addresses = _addresses_from_rrsets(answer, dns.rdatatype.A)
            if addresses:
                return addresses
        return []

    async def _ask_any(self, qname, rdtype, servers: list[str]) -> dns.message.Message:
        query = dns.message.make_query(qname, rdtype)
        last_error: Exception | None = None
        for server in servers:
            try:
                response, _ = await dns.asyncquery.udp_with_fallback(
                    query, server, timeout=DNS_QUERY_TIMEOUT, port=DNS_PORT
                )
                return response
            except (dns.exception.DNSException, OSError) as exc:
                logger.debug("Query %s %s to %s failed: %s", qname, rdtype, server, exc)
                last_error = exc
        raise ResolutionError(f"lookup {qname}: {last_error}")


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------

def _addresses(response: dns.message.Message, rdtype) -> list[str]:
    return _addresses_from_rrsets(response.answer, rdtype)


def _addresses_from_rrsets(rrsets, rdtype) -> list[str]:
    return [rr.address for rrset in rrsets if rrset.rdtype == rdtype for rr in rrset]


def _cname_target(rrsets, qname: dns.name.Name) -> Optional[dns.name.Name]:
    for rrset in rrsets:
        if rrset.rdtype == dns.rdatatype.CNAME and rrset.name == qname:
            for rr in rrset:
                return rr.target
    return None
