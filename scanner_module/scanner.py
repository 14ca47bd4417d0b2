"""
Scanner: resolves the mail-authentication records of many domains at once.

Outer level: a BoundedSemaphore admits at most `concurrency` domains, each
scanned on a worker thread. Inner level: the BIMI/DKIM/DMARC/MX/SPF lookups of
an admitted domain run on a second executor that the quota does not limit.
Results are cached per domain for `cache_duration` seconds.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple

from .cache import ResultCache
from .dns_lookup import LOOKUP_ERRORS, RecordResolver, dkim_candidates
from .dns_records import INVALID_DOMAIN, Result
from .dns_transport import DNSTransport, NameserverPool
from .logger import get_child_logger
from .options import ConfigurationError, ScannerConfig, default_port_for, validate_dkim_selectors
from .zone_source import text_domains, zonefile_domains

log = get_child_logger("scanner")

# Lookups fanned out for every admitted domain, merged in this order
INNER_LOOKUPS = ("BIMI", "DKIM", "DMARC", "MX", "SPF")


class ScannerClosedError(RuntimeError):
    """scan() was called after close()."""


class _ExecutorSet:
    """Admission slots and thread pools for one concurrency quota."""

    def __init__(self, quota: int):
        self.slots = threading.BoundedSemaphore(quota)
        self.workers = ThreadPoolExecutor(max_workers=quota, thread_name_prefix="dss-scan")
        self.lookups = ThreadPoolExecutor(max_workers=quota * len(INNER_LOOKUPS), thread_name_prefix="dss-lookup")
        # scan() calls currently holding this set; guarded by the Scanner lock
        self.users = 0
        self.retired = False

    def shutdown(self, wait: bool) -> None:
        # domain workers first: they still submit to the lookup executor
        self.workers.shutdown(wait=wait)
        self.lookups.shutdown(wait=wait)


class Scanner:
    def __init__(self, config: Optional[ScannerConfig] = None, transport: Any = None):
        """
        Args:
            config: Scanner options; validated here, before any network I/O.
            transport: Object with exchange(name, rdtype, nameserver). Defaults
                to a DNSTransport built from the config.
        """
        self.config = (config or ScannerConfig()).validated()
        self._custom_transport = transport is not None
        self._lock = threading.Lock()
        self._closed = False

        self.pool = NameserverPool(self.config.nameservers, default_port_for(self.config.dns_protocol))
        self.transport = transport if transport is not None else self._build_transport(self.config)
        self.resolver = RecordResolver(self.transport, self.pool)
        self.cache = ResultCache(self.config.cache_duration)
        self._executors = _ExecutorSet(self.config.concurrency)
        # replaced sets that in-flight scans still use
        self._retired: List[_ExecutorSet] = []

        log.debug(
            "Scanner ready (concurrency={} protocol={} nameservers={} cache={}s)",
            self.config.concurrency,
            self.config.dns_protocol,
            ",".join(self.pool.servers),
            self.config.cache_duration,
        )

    @staticmethod
    def _build_transport(config: ScannerConfig) -> DNSTransport:
        return DNSTransport(protocol=config.dns_protocol, timeout=config.timeout, dns_buffer=config.dns_buffer)

    # --- public API -------------------------------------------------------

    def scan(self, *domains: str, dkim_selectors: Optional[Sequence[str]] = None) -> List[Result]:
        """
        Scan every domain and return one Result per domain, in input order.

        Blocks until all domains are done. `dkim_selectors` overrides the
        configured selectors for this call only; such scans skip the cache.
        """
        if not domains:
            raise ConfigurationError("no domains provided")
        for domain in domains:
            if not isinstance(domain, str) or not domain:
                raise ConfigurationError(f"invalid domain: {domain!r}")

        if dkim_selectors is not None:
            if not dkim_selectors:
                raise ConfigurationError("no DKIM selectors provided")
            selectors = dkim_candidates(validate_dkim_selectors(dkim_selectors))
            use_cache = False
        else:
            selectors = dkim_candidates(self.config.dkim_selectors)
            use_cache = True

        with self._lock:
            if self._closed:
                raise ScannerClosedError("scanner is closed")
            executors = self._executors
            executors.users += 1
            resolver, cache = self.resolver, self.cache

        try:
            slots = executors.slots
            futures: List[Future] = []
            for domain in domains:
                slots.acquire()
                try:
                    future = executors.workers.submit(
                        self._scan_one, domain, selectors, use_cache, resolver, cache, executors.lookups
                    )
                except RuntimeError:
                    slots.release()
                    # close() shut the workers down while this call was admitting domains
                    if self._closed:
                        raise ScannerClosedError("scanner is closed") from None
                    raise
                except BaseException:
                    slots.release()
                    raise
                future.add_done_callback(lambda _f: slots.release())
                futures.append(future)

            return [future.result() for future in futures]
        finally:
            self._release(executors)

    def scan_zone(self, reader: TextIO) -> List[Result]:
        """Scan every host named in an RFC 1035 zone file."""
        return self.scan(*zonefile_domains(reader))

    def scan_text(self, reader: Iterable[str]) -> List[Result]:
        """Scan a newline-separated list of domains."""
        return self.scan(*text_domains(reader))

    def overwrite_option(self, **options: Any) -> None:
        """
        Replace one or more options at runtime, e.g.
        overwrite_option(dkim_selectors=["s1"]). Validation is the same as at
        construction; scans already running keep the old settings.
        """
        idle: Optional[_ExecutorSet] = None
        with self._lock:
            if self._closed:
                raise ScannerClosedError("scanner is closed")
            old = self.config
            new = old.with_options(**options)

            if new.nameservers != old.nameservers or new.dns_protocol != old.dns_protocol:
                self.pool = NameserverPool(new.nameservers, default_port_for(new.dns_protocol))
            if not self._custom_transport and (
                (new.dns_protocol, new.timeout, new.dns_buffer) != (old.dns_protocol, old.timeout, old.dns_buffer)
            ):
                self.transport = self._build_transport(new)
            self.resolver = RecordResolver(self.transport, self.pool)

            if new.cache_duration != old.cache_duration:
                self.cache.flush()
                self.cache = ResultCache(new.cache_duration)
            elif new.dkim_selectors != old.dkim_selectors:
                # cached DKIM values were found with the old selectors
                self.cache.flush()

            if new.concurrency != old.concurrency:
                # scans in flight keep the old set; the last of them shuts it down
                replaced = self._executors
                self._executors = _ExecutorSet(new.concurrency)
                if replaced.users:
                    replaced.retired = True
                    self._retired.append(replaced)
                else:
                    idle = replaced

            self.config = new
        if idle is not None:
            idle.shutdown(wait=False)
        log.info("Scanner options updated: {}", ", ".join(sorted(options)))

    def _release(self, executors: _ExecutorSet) -> None:
        with self._lock:
            executors.users -= 1
            if self._closed or not executors.retired or executors.users:
                return
            self._retired.remove(executors)
        executors.shutdown(wait=False)

    def close(self) -> None:
        """Release worker threads and drop cached results. Not resumable."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sets = [self._executors, *self._retired]
            self._retired = []
        for executors in sets:
            executors.shutdown(wait=True)
        self.cache.flush()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Scanner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # --- per-domain work ------------------------------------------------

    def _scan_one(
        self,
        domain: str,
        selectors: Tuple[str, ...],
        use_cache: bool,
        resolver: RecordResolver,
        cache: ResultCache,
        lookups: ThreadPoolExecutor,
    ) -> Result:
        if use_cache:
            cached = cache.get(domain)
            if cached is not None:
                log.debug("Cache hit for {}", domain)
                return cached

        result = self._resolve(domain, selectors, resolver, lookups)
        if result.error:
            log.warning("Scan of {} failed: {}", domain, result.error)

        # transient transport failures are not worth remembering
        if use_cache and (not result.error or result.error == INVALID_DOMAIN):
            cache.set(domain, result)
        return result

    def _resolve(
        self,
        domain: str,
        selectors: Tuple[str, ...],
        resolver: RecordResolver,
        lookups: ThreadPoolExecutor,
    ) -> Result:
        t0 = time.monotonic()

        def elapsed() -> float:
            return time.monotonic() - t0

        try:
            ns = resolver.ns(domain)
        except LOOKUP_ERRORS as e:
            return Result(domain=domain, error=f"NS: {e}", elapsed=elapsed())

        if not ns:
            # subdomains usually have no NS of their own; any TXT proves existence
            try:
                txt = resolver.txt(domain)
            except LOOKUP_ERRORS as e:
                return Result(domain=domain, error=f"TXT: {e}", elapsed=elapsed())
            if not txt:
                return Result(domain=domain, error=INVALID_DOMAIN, elapsed=elapsed())

        calls = {
            "BIMI": (resolver.bimi, (domain,)),
            "DKIM": (resolver.dkim, (domain, selectors)),
            "DMARC": (resolver.dmarc, (domain,)),
            "MX": (resolver.mx, (domain,)),
            "SPF": (resolver.spf, (domain,)),
        }
        futures: Dict[str, Future] = {
            name: lookups.submit(calls[name][0], *calls[name][1]) for name in INNER_LOOKUPS
        }

        values: Dict[str, Any] = {}
        errors: List[str] = []
        for name in INNER_LOOKUPS:
            try:
                values[name] = futures[name].result()
            except LOOKUP_ERRORS as e:
                errors.append(f"{name}: {e}")

        if errors:
            return Result(domain=domain, error="; ".join(errors), elapsed=elapsed())

        return Result(
            domain=domain,
            bimi=values["BIMI"],
            dkim=values["DKIM"],
            dmarc=values["DMARC"],
            mx=tuple(values["MX"]),
            ns=tuple(ns),
            spf=values["SPF"],
            elapsed=elapsed(),
        )
