"""
Domain sources for bulk scans: RFC 1035 zone files and plain newline lists.
"""
from __future__ import annotations

from typing import Iterable, List, TextIO

import dns.name
import dns.rdatatype
import dns.zone


def zonefile_domains(reader: TextIO) -> List[str]:
    """
    Owner names from a zone file, in file order, each listed once.

    NS rdatasets are skipped, and so are names without a dot (the zone apex
    written relative to the root acts as an anchor, not a host to scan).
    """
    # Parsing relative to the root accepts absolute names without an $ORIGIN
    zone = dns.zone.from_file(
        reader,
        origin=dns.name.root,
        relativize=False,
        check_origin=False,
        allow_include=True,
    )

    domains: List[str] = []
    seen = set()
    for name, rdataset in zone.iterate_rdatasets():
        if rdataset.rdtype == dns.rdatatype.NS:
            continue
        domain = name.to_text().strip(".")
        if "." not in domain or domain in seen:
            continue
        seen.add(domain)
        domains.append(domain)
    return domains


def text_domains(reader: Iterable[str]) -> List[str]:
    """One domain per line; surrounding whitespace and dots are trimmed, blanks skipped."""
    domains = []
    for line in reader:
        name = line.strip().strip(".")
        if name:
            domains.append(name)
    return domains
