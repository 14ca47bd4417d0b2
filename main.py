import argparse
import csv
import io
import json
import os
import sys
import time
from typing import Any, Dict, Iterable, List, Optional, TextIO

# Ensure the current directory is in sys.path so we can import modules
sys.path.insert(0, os.getcwd())

import dns.exception
import yaml
from dotenv import load_dotenv

from scanner_module.dns_records import CSV_HEADER, Result
from scanner_module.logger import configure_logging, get_child_logger
from scanner_module.options import (
    DNS_PROTOCOLS,
    ConfigurationError,
    ScannerConfig,
    load_env_config,
    merge_config,
)
from scanner_module.scanner import Scanner

VERSION = "1.0.0"
FORMATS = ("yaml", "json", "jsonp", "csv")

EXIT_SUCCESS = 0
EXIT_CONFIG = 1

load_dotenv()

log = get_child_logger("main")


def _split_csv(values: Optional[List[str]]) -> Optional[List[str]]:
    """Flatten repeated/comma-separated flag values."""
    if values is None:
        return None
    return [v.strip() for value in values for v in value.split(",") if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dss",
        description="Scan a domain's DNS records for BIMI, DKIM, DMARC, MX and SPF.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-d", "--debug", action="store_true", help="Print debug logs")
    parser.add_argument(
        "--pretty-log", action=argparse.BooleanOptionalAction, default=True,
        help="Colorized human-readable logs (default: on)",
    )

    # scanner options; None means "not given" so env/defaults apply
    parser.add_argument("--cache", type=float, metavar="SEC", help="How long to cache results for (0 disables)")
    parser.add_argument("-c", "--concurrent", type=int, metavar="N", help="Number of domains to scan concurrently")
    parser.add_argument("--dkim-selector", action="append", metavar="SELECTOR", help="DKIM selector to try first; repeatable or comma separated")
    parser.add_argument("--dns-buffer", type=int, metavar="BYTES", help="EDNS0 buffer size for DNS responses (max 4096)")
    parser.add_argument("--dns-protocol", choices=DNS_PROTOCOLS, help="Protocol to use for DNS queries")
    parser.add_argument("-n", "--nameservers", action="append", metavar="HOST[:PORT]", help="Nameserver to query; repeatable or comma separated")
    parser.add_argument("-t", "--timeout", type=float, metavar="SEC", help="Timeout for a single DNS query")

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan DNS records for one or multiple domains")
    scan.add_argument("domains", nargs="*", help="Domains to scan; read from STDIN when omitted")
    scan.add_argument("-f", "--format", choices=FORMATS, default="yaml", help="Output format (default: yaml)")
    scan.add_argument(
        "-o", "--output-file", nargs="?", const="", metavar="FILE",
        help="Write results to FILE.<format> (current unix time when FILE is omitted)",
    )
    scan.add_argument("-z", "--zone-file", action="store_true", help="Read an RFC 1035 zone file from STDIN")

    serve = sub.add_parser("serve", help="Serve the scanner over HTTP")
    serve.add_argument("--host", default=os.getenv("DSS_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("DSS_PORT", "8080")))
    return parser


def build_config(args: Optional[argparse.Namespace] = None) -> ScannerConfig:
    """Defaults < DSS_* environment < command line flags."""
    cli: Dict[str, Any] = {}
    if args is not None:
        cli = {
            "cache_duration": args.cache,
            "concurrency": args.concurrent,
            "dkim_selectors": _split_csv(args.dkim_selector),
            "dns_buffer": args.dns_buffer,
            "dns_protocol": args.dns_protocol,
            "nameservers": _split_csv(args.nameservers),
            "timeout": args.timeout,
        }
    merged = merge_config(load_env_config(), cli)
    for key in ("dkim_selectors", "nameservers"):
        if key in merged:
            merged[key] = tuple(merged[key])
    return ScannerConfig(**merged)


def marshal(results: Iterable[Result], fmt: str, header: bool = False) -> str:
    results = list(results)
    rows = [r.to_dict() for r in results]
    if fmt == "json":
        return "".join(json.dumps(row) + "\n" for row in rows)
    if fmt == "jsonp":
        return "".join(json.dumps(row, indent="\t") + "\n" for row in rows)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        if header:
            writer.writerow(CSV_HEADER)
        for r in results:
            writer.writerow(r.csv_row())
        return buffer.getvalue()
    if not rows:
        return ""
    return yaml.safe_dump_all(rows, sort_keys=False, explicit_start=True, allow_unicode=True)


class ResultWriter:
    """Prints results to stdout, or appends them to <output-file>.<ext>."""

    def __init__(self, fmt: str, output_file: Optional[str], stream: Optional[TextIO] = None):
        self.fmt = fmt
        self.stream = stream or sys.stdout
        self.path: Optional[str] = None
        if output_file is not None:
            base = output_file or str(int(time.time()))
            extension = "json" if fmt == "jsonp" else fmt
            self.path = f"{base}.{extension}"
        self._wrote_header = False

    def write(self, results: List[Result]) -> None:
        text = marshal(results, self.fmt, header=not self._wrote_header)
        self._wrote_header = True
        if self.path is None:
            self.stream.write(text)
            self.stream.flush()
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

    def close(self) -> None:
        if self.path is not None and self._wrote_header:
            log.info("Output written to {}", self.path)


def run_scan(args: argparse.Namespace, scanner: Scanner, stdin: Optional[TextIO] = None) -> int:
    stdin = stdin or sys.stdin
    if args.zone_file and args.domains:
        log.error("-z flag provided, but not reading from STDIN")
        return EXIT_CONFIG

    writer = ResultWriter(args.format, args.output_file)
    try:
        if args.zone_file:
            try:
                results = scanner.scan_zone(stdin)
            except dns.exception.DNSException as e:
                log.error("Could not parse zone file: {}", e)
                return EXIT_CONFIG
            writer.write(results)
        elif args.domains:
            writer.write(scanner.scan(*args.domains))
        else:
            if stdin.isatty():
                log.info("Enter one or more domains to scan (press Ctrl-D to finish):")
            for line in stdin:
                domain = line.strip()
                if domain:
                    writer.write(scanner.scan(domain))
    finally:
        writer.close()
    return EXIT_SUCCESS


def run_serve(args: argparse.Namespace, scanner: Scanner) -> int:
    import uvicorn

    import api

    api.set_scanner(scanner)
    log.info("Starting api server on {}:{}", args.host, args.port)
    # log_config=None keeps uvicorn on the stdlib root handler, which is bridged to loguru
    uvicorn.run(api.app, host=args.host, port=args.port, log_config=None)
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level="DEBUG" if args.debug else None, pretty=args.pretty_log)

    try:
        scanner = Scanner(build_config(args))
    except ConfigurationError as e:
        log.error("Invalid configuration: {}", e)
        return EXIT_CONFIG

    try:
        if args.command == "serve":
            return run_serve(args, scanner)
        return run_scan(args, scanner)
    except ConfigurationError as e:
        log.error("{}", e)
        return EXIT_CONFIG
    finally:
        scanner.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
