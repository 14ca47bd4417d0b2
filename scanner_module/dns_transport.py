"""
Single DNS exchanges against an explicit nameserver, and the round-robin pool
that picks which nameserver a query goes to.

The transport talks to nameservers directly with dnspython's dns.query
(no stub resolver, no retry on timeout). A truncated answer is retried once
with the largest EDNS0 payload.
"""
from __future__ import annotations

import itertools
from typing import Iterable, List, Tuple, Union

import dns.flags
import dns.message
import dns.name
import dns.query
import dns.rdatatype
import dns.rrset

from .logger import get_child_logger
from .options import (
    DEFAULT_DNS_BUFFER,
    DEFAULT_DNS_PORT,
    DEFAULT_TIMEOUT_S,
    DNS_PROTOCOLS,
    MAX_DNS_BUFFER,
    normalize_nameservers,
    split_nameserver,
)

log = get_child_logger("dns_transport")

RdataTypeLike = Union[str, int, dns.rdatatype.RdataType]


class NameserverPool:
    """
    Hands out nameservers in round-robin order.

    No health tracking: a nameserver that keeps failing stays in rotation.
    """

    def __init__(self, nameservers: Iterable[str] = (), default_port: int = DEFAULT_DNS_PORT):
        self._servers: Tuple[str, ...] = normalize_nameservers(nameservers, default_port)
        # itertools.count advances atomically under the GIL
        self._cursor = itertools.count()

    @property
    def servers(self) -> Tuple[str, ...]:
        return self._servers

    def next(self) -> str:
        return self._servers[next(self._cursor) % len(self._servers)]

    def __len__(self) -> int:
        return len(self._servers)


def host_port(nameserver: str) -> Tuple[str, int]:
    """Inverse of normalize_nameserver: "[::1]:53" -> ("::1", 53)."""
    host, port = split_nameserver(nameserver)
    return host, port or DEFAULT_DNS_PORT


class DNSTransport:
    def __init__(
        self,
        protocol: str = "udp",
        timeout: float = DEFAULT_TIMEOUT_S,
        dns_buffer: int = DEFAULT_DNS_BUFFER,
    ):
        if protocol not in DNS_PROTOCOLS:
            raise ValueError(f"unsupported DNS protocol: {protocol}")
        self.protocol = protocol
        self.timeout = timeout
        self.dns_buffer = dns_buffer

    def build_query(self, name: str, rdtype: RdataTypeLike, payload: int) -> dns.message.QueryMessage:
        qname = dns.name.from_text(name)
        return dns.message.make_query(
            qname,
            dns.rdatatype.RdataType.make(rdtype),
            use_edns=0,
            payload=payload,
        )

    def exchange(self, name: str, rdtype: RdataTypeLike, nameserver: str) -> List[dns.rrset.RRset]:
        """
        Send one question to `nameserver` and return the answer section.

        Raises dns.exception.DNSException / OSError on network, timeout or
        parse failures.
        """
        response = self._send(self.build_query(name, rdtype, self.dns_buffer), nameserver)

        if response.flags & dns.flags.TC and self.dns_buffer < MAX_DNS_BUFFER:
            log.warning(
                "DNS buffer {} was too small for {}, retrying with larger buffer ({})",
                self.dns_buffer,
                name,
                MAX_DNS_BUFFER,
            )
            response = self._send(self.build_query(name, rdtype, MAX_DNS_BUFFER), nameserver)

        return list(response.answer)

    def _send(self, query: dns.message.Message, nameserver: str) -> dns.message.Message:
        host, port = host_port(nameserver)
        if self.protocol == "tcp":
            return dns.query.tcp(query, host, timeout=self.timeout, port=port)
        if self.protocol == "tcp-tls":
            return dns.query.tls(query, host, timeout=self.timeout, port=port)
        return dns.query.udp(query, host, timeout=self.timeout, port=port)
