"""
Record resolution on top of DNSTransport.

Raw lookups (A, AAAA, CNAME, MX, NS, TXT) return presentation strings and
follow CNAMEs the nameserver did not already chase. Derived lookups (BIMI,
DKIM, DMARC, SPF) search TXT answers for their version prefix and reassemble
records split into several character-strings.

Derived lookups are best effort: an exchange error means "no record". Raw
lookups let the error propagate.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import dns.exception
import dns.name
import dns.rdata
import dns.rdatatype

from .logger import get_child_logger

log = get_child_logger("dns_lookup")

BIMI_PREFIX = "v=BIMI1;"
DKIM_PREFIX = "v=DKIM1;"
DMARC_PREFIX = "v=DMARC1;"
SPF_PREFIX = "v=spf1 "

# Provider selectors tried after the caller's own, in this order
KNOWN_DKIM_SELECTORS: Tuple[str, ...] = (
    "x",              # Generic
    "google",         # Google
    "selector1",      # Microsoft
    "selector2",      # Microsoft
    "k1",             # MailChimp
    "mandrill",       # Mandrill
    "everlytickey1",  # Everlytic
    "everlytickey2",  # Everlytic
    "dkim",           # Hetzner
    "mxvault",        # MxVault
)

MAX_INDIRECTION_DEPTH = 10

LOOKUP_ERRORS = (dns.exception.DNSException, OSError)


class IndirectionLimitError(dns.exception.DNSException):
    """A CNAME chain was longer than MAX_INDIRECTION_DEPTH."""


def dkim_candidates(selectors: Iterable[str] = ()) -> Tuple[str, ...]:
    """Caller selectors first, then the known provider selectors; duplicates dropped."""
    return tuple(dict.fromkeys((*selectors, *KNOWN_DKIM_SELECTORS)))


def reassemble(records: Sequence[Sequence[str]], prefix: str) -> str:
    """
    Return the first TXT record carrying `prefix`, joined from the segment
    where the prefix starts through the last segment of that record.
    """
    for segments in records:
        for index, segment in enumerate(segments):
            if segment.startswith(prefix):
                return "".join(segments[index:])
    return ""


def spf_redirect_target(record: str) -> Optional[str]:
    """Domain named by redirect=, unless an all mechanism makes it inert."""
    target = None
    for term in record.split():
        lowered = term.lower()
        if lowered.lstrip("+-~?") == "all":
            return None
        if target is None and lowered.startswith("redirect="):
            target = term.split("=", 1)[1]
    return target or None


def _txt_segments(rdata: dns.rdata.Rdata) -> Tuple[str, ...]:
    return tuple(s.decode("utf-8", errors="replace") for s in rdata.strings)


def _to_text(rdata: dns.rdata.Rdata) -> str:
    rdtype = rdata.rdtype
    if rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return str(rdata.address)
    if rdtype == dns.rdatatype.MX:
        return rdata.exchange.to_text()
    if rdtype in (dns.rdatatype.NS, dns.rdatatype.CNAME):
        return rdata.target.to_text()
    if rdtype == dns.rdatatype.TXT:
        return "".join(_txt_segments(rdata))
    return rdata.to_text()


class RecordResolver:
    def __init__(self, transport, pool, max_depth: int = MAX_INDIRECTION_DEPTH):
        self.transport = transport
        self.pool = pool
        self.max_depth = max_depth

    def exchange(self, name: str, rdtype: dns.rdatatype.RdataType):
        return self.transport.exchange(name, rdtype, self.pool.next())

    def rdatas(self, name: str, rdtype, _depth: int = 0) -> List[dns.rdata.Rdata]:
        """
        Rdata of `rdtype` for `name`, following aliases. CNAMEs whose target
        is already answered in the same response are not queried again.
        """
        if _depth > self.max_depth:
            raise IndirectionLimitError(f"CNAME chain for {name} exceeds {self.max_depth} hops")

        rdtype = dns.rdatatype.RdataType.make(rdtype)
        answer = self.exchange(name, rdtype)
        owners = {rrset.name for rrset in answer}

        out: List[dns.rdata.Rdata] = []
        for rrset in answer:
            if rrset.rdtype == dns.rdatatype.CNAME and rdtype != dns.rdatatype.CNAME:
                for rdata in rrset:
                    if rdata.target in owners:
                        continue
                    out.extend(self.rdatas(rdata.target.to_text(), rdtype, _depth + 1))
                continue
            if rrset.rdtype == rdtype:
                out.extend(rrset)
        return out

    def records(self, name: str, rdtype) -> List[str]:
        return [_to_text(rdata) for rdata in self.rdatas(name, rdtype)]

    def a(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.A)

    def aaaa(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.AAAA)

    def cname(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.CNAME)

    def mx(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.MX)

    def ns(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.NS)

    def txt(self, name: str) -> List[str]:
        return self.records(name, dns.rdatatype.TXT)

    def txt_segments(self, name: str) -> List[Tuple[str, ...]]:
        return [_txt_segments(rdata) for rdata in self.rdatas(name, dns.rdatatype.TXT)]

    # --- derived records -------------------------------------------------

    def _first_match(self, names: Iterable[str], prefix: str) -> str:
        for name in names:
            try:
                segments = self.txt_segments(name)
            except LOOKUP_ERRORS as e:
                log.debug("TXT lookup for {} failed, treating {} as absent: {}", name, prefix, e)
                return ""
            record = reassemble(segments, prefix)
            if record:
                return record
        return ""

    def bimi(self, domain: str) -> str:
        return self._first_match((f"default._bimi.{domain}", domain), BIMI_PREFIX)

    def dmarc(self, domain: str) -> str:
        return self._first_match((f"_dmarc.{domain}", domain), DMARC_PREFIX)

    def dkim(self, domain: str, selectors: Sequence[str] = KNOWN_DKIM_SELECTORS) -> str:
        return self._first_match((f"{s}._domainkey.{domain}" for s in selectors), DKIM_PREFIX)

    def spf(self, domain: str, _depth: int = 0) -> str:
        record = self._first_match((domain,), SPF_PREFIX)
        target = spf_redirect_target(record) if record else None
        if target is None:
            return record
        if _depth >= self.max_depth:
            log.warning("SPF redirect chain from {} exceeds {} hops; giving up", domain, self.max_depth)
            return ""
        log.debug("Following SPF redirect {} -> {}", domain, target)
        return self.spf(target, _depth + 1)
