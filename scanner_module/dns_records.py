# scanner_module/dns_records.py
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

INVALID_DOMAIN = "invalid domain name"

CSV_HEADER = ["domain", "bimi", "dkim", "dmarc", "mx", "ns", "spf", "error"]


@dataclass(frozen=True)
class Result:
    """
    Outcome of scanning one domain.

    Attributes:
        domain: The scanned domain name, as given by the caller.
        bimi, dkim, dmarc, spf: The reassembled TXT record, or "" when absent.
        mx, ns: Host names in answer order, with the trailing root dot.
        error: "" on success, INVALID_DOMAIN, or "<TYPE>: <message>" for a
            failed MX/NS exchange. A non-empty error means every record field
            is empty.
        elapsed: Wall time spent resolving, in seconds.
    """
    domain: str
    bimi: str = ""
    dkim: str = ""
    dmarc: str = ""
    mx: Tuple[str, ...] = ()
    ns: Tuple[str, ...] = ()
    spf: str = ""
    error: str = ""
    elapsed: float = 0.0

    def __post_init__(self) -> None:
        # lists handed in by callers are frozen too
        object.__setattr__(self, "mx", tuple(self.mx))
        object.__setattr__(self, "ns", tuple(self.ns))
        if self.error and self.has_records:
            raise ValueError("a failed Result can't carry record data")

    @property
    def has_records(self) -> bool:
        return any((self.bimi, self.dkim, self.dmarc, self.mx, self.ns, self.spf))

    @property
    def failed(self) -> bool:
        return bool(self.error)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view; empty fields are omitted."""
        out: Dict[str, Any] = {"domain": self.domain}
        for key in CSV_HEADER[1:]:
            value = getattr(self, key)
            if value:
                out[key] = list(value) if isinstance(value, tuple) else value
        return out

    def csv_row(self) -> List[str]:
        return [
            self.domain,
            self.bimi,
            self.dkim,
            self.dmarc,
            " ".join(self.mx),
            " ".join(self.ns),
            self.spf,
            self.error,
        ]
