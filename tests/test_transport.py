import dns.flags
import dns.message
import pytest
from loguru import logger

from conftest import rr
from scanner_module.dns_transport import DNSTransport, NameserverPool, host_port


class RecordingTransport(DNSTransport):
    def __init__(self, truncate_below=None, **kwargs):
        super().__init__(**kwargs)
        self.truncate_below = truncate_below
        self.sent = []

    def _send(self, query, nameserver):
        self.sent.append((query.payload, nameserver))
        response = dns.message.make_response(query)
        if self.truncate_below and query.payload < self.truncate_below:
            response.flags |= dns.flags.TC
            return response
        response.answer.append(rr("example.org.", "TXT", '"v=spf1 -all"'))
        return response


def test_truncated_answer_retried_once_with_max_buffer():
    messages = []
    sink = logger.add(messages.append, level="WARNING")
    try:
        transport = RecordingTransport(truncate_below=4096, dns_buffer=512)
        answer = transport.exchange("example.org", "TXT", "1.1.1.1:53")
    finally:
        logger.remove(sink)

    assert transport.sent == [(512, "1.1.1.1:53"), (4096, "1.1.1.1:53")]
    assert len(answer) == 1
    assert any("retrying with larger buffer" in str(m) for m in messages)


def test_no_retry_at_max_buffer():
    transport = RecordingTransport(truncate_below=8192, dns_buffer=4096)
    answer = transport.exchange("example.org", "TXT", "1.1.1.1:53")
    assert transport.sent == [(4096, "1.1.1.1:53")]
    assert answer == []


def test_no_retry_when_not_truncated():
    transport = RecordingTransport(dns_buffer=1232)
    transport.exchange("example.org", "TXT", "1.1.1.1:53")
    assert transport.sent == [(1232, "1.1.1.1:53")]


def test_build_query_sets_edns_payload():
    query = DNSTransport().build_query("example.org", "MX", 1232)
    assert query.edns == 0
    assert query.payload == 1232
    assert query.question[0].name.to_text() == "example.org."


def test_unknown_protocol_rejected():
    with pytest.raises(ValueError):
        DNSTransport(protocol="quic")


def test_pool_round_robin():
    pool = NameserverPool(["1.1.1.1", "8.8.8.8", "9.9.9.9"])
    first = [pool.next() for _ in range(3)]
    assert sorted(first) == ["1.1.1.1:53", "8.8.8.8:53", "9.9.9.9:53"]
    assert [pool.next() for _ in range(3)] == first


def test_pool_falls_back_to_public_resolvers():
    assert NameserverPool().servers == ("8.8.8.8:53", "8.8.4.4:53", "1.1.1.1:53")
    assert NameserverPool(default_port=853).servers[0] == "8.8.8.8:853"


def test_host_port():
    assert host_port("[::1]:5353") == ("::1", 5353)
    assert host_port("1.1.1.1:53") == ("1.1.1.1", 53)
