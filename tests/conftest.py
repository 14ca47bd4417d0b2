import threading
import time
from typing import Dict, List, Tuple, Union

import dns.rdatatype
import dns.rrset
import pytest

from scanner_module.options import ScannerConfig
from scanner_module.scanner import Scanner


def rr(owner: str, rdtype: str, *rdatas: str) -> dns.rrset.RRset:
    """Build an answer RRset, e.g. rr("example.org.", "TXT", '"v=spf1 -all"')."""
    return dns.rrset.from_text(owner, 300, "IN", rdtype, *rdatas)


Answer = Union[List[dns.rrset.RRset], Exception]


class FakeTransport:
    """
    Stands in for DNSTransport. Answers come from a dict keyed by
    (name, type); unknown questions get an empty answer, like NXDOMAIN.
    """

    def __init__(self, answers: Dict[Tuple[str, str], Answer] = None, delay: float = 0.0):
        self.answers = {(n.lower().strip("."), t.upper()): a for (n, t), a in (answers or {}).items()}
        self.delay = delay
        self.queries: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def exchange(self, name, rdtype, nameserver):
        key = (name.lower().strip("."), dns.rdatatype.to_text(dns.rdatatype.RdataType.make(rdtype)))
        with self._lock:
            self.queries.append((key[0], key[1], nameserver))
        if self.delay:
            time.sleep(self.delay)
        answer = self.answers.get(key, [])
        if isinstance(answer, Exception):
            raise answer
        return list(answer)

    def count(self, name: str = None, rdtype: str = None) -> int:
        with self._lock:
            return sum(
                1
                for n, t, _ in self.queries
                if (name is None or n == name) and (rdtype is None or t == rdtype)
            )


@pytest.fixture
def example_org():
    return {
        ("example.org", "TXT"): [rr("example.org.", "TXT", '"v=spf1 -all"')],
        ("_dmarc.example.org", "TXT"): [rr("_dmarc.example.org.", "TXT", '"v=DMARC1; p=reject;"')],
    }


@pytest.fixture
def make_scanner():
    scanners = []

    def factory(answers=None, delay=0.0, **options):
        options.setdefault("concurrency", 2)
        transport = FakeTransport(answers, delay=delay)
        scanner = Scanner(ScannerConfig(**options), transport=transport)
        scanners.append(scanner)
        return scanner, transport

    yield factory
    for scanner in scanners:
        scanner.close()
