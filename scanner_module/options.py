"""
Scanner configuration: validated, immutable options plus the validators for
DKIM selectors and nameserver addresses.

Environment variables (DSS_*) override the defaults; the CLI overrides both.
"""
from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Iterable, Optional, Tuple

from .logger import get_child_logger

log = get_child_logger("options")

DEFAULT_NAMESERVERS: Tuple[str, ...] = ("8.8.8.8", "8.8.4.4", "1.1.1.1")
DEFAULT_DNS_PORT = 53
DEFAULT_TLS_PORT = 853
MAX_DNS_BUFFER = 4096
DEFAULT_DNS_BUFFER = MAX_DNS_BUFFER
DEFAULT_TIMEOUT_S = 15.0
DEFAULT_CACHE_DURATION_S = 180.0
DNS_PROTOCOLS = ("udp", "tcp", "tcp-tls")
MAX_SELECTOR_LENGTH = 63

_SELECTOR_CHAR_RE = re.compile(r"[^A-Za-z0-9._-]")
_BRACKETED_RE = re.compile(r"^\[(?P<host>[^\]]+)\](?::(?P<port>\d+))?$")


class ConfigurationError(ValueError):
    """An option value was rejected before any query was sent."""


def validate_dkim_selector(selector: str) -> None:
    if not isinstance(selector, str) or not selector:
        raise ConfigurationError("DKIM selector is empty")
    if len(selector) > MAX_SELECTOR_LENGTH:
        raise ConfigurationError(
            f"DKIM selector length is {len(selector)}, can't exceed {MAX_SELECTOR_LENGTH}"
        )
    if selector[0] in "._":
        raise ConfigurationError(f"DKIM selector should not start with '{selector[0]}'")
    if selector[-1] in "._":
        raise ConfigurationError(f"DKIM selector should not end with '{selector[-1]}'")
    bad = _SELECTOR_CHAR_RE.search(selector)
    if bad:
        raise ConfigurationError(
            f"DKIM selector has invalid character '{bad.group()}' at offset {bad.start()}"
        )


def validate_dkim_selectors(selectors: Iterable[str]) -> Tuple[str, ...]:
    out = tuple(selectors)
    for selector in out:
        validate_dkim_selector(selector)
    return out


def _parse_port(value: str, address: str) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise ConfigurationError(f"invalid port in nameserver address: {address}")
    return port


def split_nameserver(address: str) -> Tuple[str, Optional[int]]:
    """Split "host", "host:port", "[v6]" or "[v6]:port" into (host, port or None)."""
    address = address.strip()
    m = _BRACKETED_RE.match(address)
    if m:
        port = m.group("port")
        return m.group("host"), _parse_port(port, address) if port else None
    if address.count(":") == 1:
        host, port = address.split(":")
        if not port.isdigit():
            raise ConfigurationError(f"invalid IP address: {address}")
        return host, _parse_port(port, address)
    return address, None


def normalize_nameserver(address: str, default_port: int = DEFAULT_DNS_PORT) -> str:
    """
    Return the "host:port" form of a nameserver address. Bare IPs get the
    default port, IPv6 literals are bracketed. Anything that is not an IP
    address is rejected.

    Callers pass default_port_for(protocol): bare addresses get 853 under
    tcp-tls (DNS over TLS) and 53 otherwise.
    """
    if not isinstance(address, str) or not address.strip():
        raise ConfigurationError("empty nameserver address")
    host, port = split_nameserver(address)
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ConfigurationError(f"invalid IP address: {address}") from None
    port = port or default_port
    if ip.version == 6:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def default_port_for(protocol: str) -> int:
    return DEFAULT_TLS_PORT if protocol == "tcp-tls" else DEFAULT_DNS_PORT


def normalize_nameservers(addresses: Iterable[str], default_port: int = DEFAULT_DNS_PORT) -> Tuple[str, ...]:
    """Normalize every address; an empty input falls back to the public resolvers."""
    normalized = tuple(normalize_nameserver(a, default_port) for a in addresses)
    return normalized or tuple(normalize_nameserver(a, default_port) for a in DEFAULT_NAMESERVERS)


@dataclass(frozen=True)
class ScannerConfig:
    """
    Every option a Scanner accepts. Use validated() (or with_options()) to
    obtain the normalized form; the Scanner does this on construction.
    """

    concurrency: int = 0
    dkim_selectors: Tuple[str, ...] = ()
    dns_buffer: int = DEFAULT_DNS_BUFFER
    dns_protocol: str = "udp"
    nameservers: Tuple[str, ...] = ()
    cache_duration: float = DEFAULT_CACHE_DURATION_S
    timeout: float = DEFAULT_TIMEOUT_S

    def validated(self) -> "ScannerConfig":
        concurrency = _as_int("concurrency", self.concurrency)
        if concurrency <= 0:
            concurrency = os.cpu_count() or 1

        if isinstance(self.dkim_selectors, str):
            raise ConfigurationError("dkim_selectors must be a sequence of selectors")
        selectors = validate_dkim_selectors(self.dkim_selectors)

        dns_buffer = _as_int("dns_buffer", self.dns_buffer)
        if dns_buffer > MAX_DNS_BUFFER:
            raise ConfigurationError(f"DNS buffer size {dns_buffer} can't exceed {MAX_DNS_BUFFER}")
        if dns_buffer <= 0:
            raise ConfigurationError(f"DNS buffer size must be positive, got {dns_buffer}")

        protocol = str(self.dns_protocol or "").strip().lower()
        if protocol not in DNS_PROTOCOLS:
            raise ConfigurationError(
                f"invalid DNS protocol {self.dns_protocol!r}; expected one of {', '.join(DNS_PROTOCOLS)}"
            )

        if isinstance(self.nameservers, str):
            raise ConfigurationError("nameservers must be a sequence of addresses")
        # empty stays empty; the pool applies the public fallback for the protocol's port
        nameservers = tuple(normalize_nameserver(a, default_port_for(protocol)) for a in self.nameservers)

        cache_duration = _as_float("cache_duration", self.cache_duration)
        if cache_duration < 0:
            raise ConfigurationError("cache duration can't be negative")

        timeout = _as_float("timeout", self.timeout)
        if timeout <= 0:
            raise ConfigurationError("timeout must be positive")

        return ScannerConfig(
            concurrency=concurrency,
            dkim_selectors=selectors,
            dns_buffer=dns_buffer,
            dns_protocol=protocol,
            nameservers=nameservers,
            cache_duration=cache_duration,
            timeout=timeout,
        )

    def with_options(self, **options: Any) -> "ScannerConfig":
        """Return a validated copy with the given options replaced."""
        known = {f.name for f in fields(self)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(unknown)}")
        if "dkim_selectors" in options and not options["dkim_selectors"]:
            raise ConfigurationError("no DKIM selectors provided")
        for key in ("dkim_selectors", "nameservers"):
            if key in options and not isinstance(options[key], str):
                options[key] = tuple(options[key] or ())
        return replace(self, **options).validated()


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _env_list(name: str) -> Optional[Tuple[str, ...]]:
    v = os.environ.get(name, "").strip()
    if not v:
        return None
    return tuple(s.strip() for s in v.split(",") if s.strip())


def _env_number(name: str, cast) -> Optional[Any]:
    v = os.environ.get(name, "").strip()
    if not v:
        return None
    try:
        return cast(v)
    except ValueError:
        log.warning("Environment variable {} has invalid value {!r}; ignoring", name, v)
        return None


def load_env_config() -> Dict[str, Any]:
    """Load scanner options from DSS_* environment variables. Unset keys are omitted."""
    cfg = {
        "concurrency": _env_number("DSS_CONCURRENT", int),
        "dkim_selectors": _env_list("DSS_DKIM_SELECTORS"),
        "dns_buffer": _env_number("DSS_DNS_BUFFER", int),
        "dns_protocol": os.environ.get("DSS_DNS_PROTOCOL", "").strip().lower() or None,
        "nameservers": _env_list("DSS_NAMESERVERS"),
        "cache_duration": _env_number("DSS_CACHE_DURATION", float),
        "timeout": _env_number("DSS_TIMEOUT", float),
    }
    return {k: v for k, v in cfg.items() if v is not None}


def merge_config(*layers: Dict[str, Any]) -> Dict[str, Any]:
    """Merge option layers left to right; later non-None values win."""
    out: Dict[str, Any] = {}
    for layer in layers:
        for k, v in layer.items():
            if v is not None:
                out[k] = v
    return out
