#!/usr/bin/env python3
"""
Blocklist Refresh

Refreshes a local banned-IP file from public plaintext IP feeds. Meant to be
run once per invocation by an external scheduler (cron, systemd timer, ...).

Features:
- Configurable remote sources (URL + parser hint)
- Streaming downloads with bounded timeouts
- IPv4 extraction from the existing file (strict or lenient octets)
- Exact-string deduplication
- Append-only writes: only entries unknown to the file are added
- Per-source Prometheus metrics (status, entries, duration, errors)

License: MIT
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Optional, Set

import requests
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry, Gauge, Histogram, delete_from_gateway, push_to_gateway
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

ERROR_CALLING_WEB_SERVICE_MESSAGE = "Error calling web service for banned IP URL name: {url}"
ERROR_ADD_BANNED_IP_MESSAGE = "Error writing new banned IP file"

USER_AGENT = f"blocklist-refresh/{__version__}"


# =============================================================================
# Blocklist Sources
# =============================================================================

PARSER_LINES = "lines"
PARSER_IPV4 = "ipv4"
VALID_PARSERS: set[str] = {PARSER_LINES, PARSER_IPV4}


@dataclass
class RemoteSource:
    """A web service publishing a newline-delimited list of IPs."""
    name: str
    url: str
    # "lines": every non-blank line verbatim, "ipv4": only IPv4 substrings
    parser: str = PARSER_LINES


DEFAULT_SOURCES: list[RemoteSource] = [
    RemoteSource(
        name="blocklist.de all",
        url="https://www.blocklist.de/downloads/export-ips_all.txt",
    ),
    RemoteSource(
        name="badips ssh",
        url="http://www.badips.com/get/list/ssh/2",
    ),
]


def sources_from_urls(urls: Iterable[str], parser: str = PARSER_LINES) -> list[RemoteSource]:
    """Build RemoteSource descriptors from bare URLs, named by position."""
    return [
        RemoteSource(name=f"source_{i}", url=url, parser=parser)
        for i, url in enumerate(urls)
        if url
    ]


def list_sources(sources: list[RemoteSource], logger: logging.Logger) -> None:
    """Print the configured sources."""
    logger.info("Configured blocklist sources:")
    for source in sources:
        logger.info(f"  - {source.name} [{source.parser}]: {source.url}")


# =============================================================================
# Configuration
# =============================================================================

def _get_bool(key: str, default: bool) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes", "on")


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    blocklist_file: str = "banned_ip.txt"
    sources: list[RemoteSource] = field(default_factory=lambda: list(DEFAULT_SOURCES))
    source_parser: str = PARSER_LINES  # parser for sources given as bare URLs

    # Fetching
    fetch_timeout: int = 60
    max_retries: int = 0

    # Parsing
    strict_ipv4: bool = False

    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    log_timestamps: bool = True

    # Prometheus metrics
    metrics_enabled: bool = False
    pushgateway_url: str = "localhost:9091"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        load_dotenv()

        parser = os.getenv("SOURCE_PARSER", PARSER_LINES).lower()
        if parser not in VALID_PARSERS:
            raise ValueError(
                f"Invalid value for SOURCE_PARSER: '{parser}' "
                f"(expected one of: {', '.join(sorted(VALID_PARSERS))})"
            )

        urls = [u.strip() for u in os.getenv("BLOCKLIST_SOURCES", "").split(",") if u.strip()]
        sources = sources_from_urls(urls, parser) if urls else list(DEFAULT_SOURCES)

        return cls(
            blocklist_file=os.getenv("BLOCKLIST_FILE", "banned_ip.txt"),
            sources=sources,
            source_parser=parser,
            fetch_timeout=int(os.getenv("FETCH_TIMEOUT", "60")),
            max_retries=int(os.getenv("MAX_RETRIES", "0")),
            strict_ipv4=_get_bool("STRICT_IPV4", False),
            dry_run=_get_bool("DRY_RUN", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_timestamps=_get_bool("LOG_TIMESTAMPS", True),
            metrics_enabled=_get_bool("METRICS_ENABLED", False),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL", "localhost:9091"),
        )


# =============================================================================
# IPv4 Matching
# =============================================================================

# Accepts leading zeros ("010"), which usually imply octal
_OCTET_LENIENT = r"(25[0-5]|2[0-9][0-9]|[01]?[0-9][0-9]?)"
# Rejects leading zeros
_OCTET_STRICT = r"(25[0-5]|2[0-4][0-9]|1[0-9][0-9]|[1-9]?[0-9])"


@lru_cache(maxsize=None)
def ipv4_pattern(strict: bool = False) -> re.Pattern:
    """
    Return a compiled IPv4 regular expression.

    Matches four dot-separated octets anywhere in a string (not anchored),
    so an address embedded in surrounding text is found too.

    Args:
        strict: Reject octets with a leading zero.
    """
    octet = _OCTET_STRICT if strict else _OCTET_LENIENT
    return re.compile(r"\.".join([octet] * 4))


def extract_ips(line: str, pattern: re.Pattern) -> list[str]:
    """Return every IPv4 address found in a line of text."""
    return [match.group(0) for match in pattern.finditer(line)]


def merge_ips(new_ips: Iterable[str], old_ips: Iterable[str]) -> list[str]:
    """
    Merge two IP collections, dropping exact-string duplicates.

    Order follows the merge order: new entries first, then old ones.
    """
    merged: dict[str, None] = dict.fromkeys(new_ips)
    merged.update(dict.fromkeys(old_ips))
    return list(merged)


# =============================================================================
# Prometheus Metrics
# =============================================================================

_ERROR_PATTERNS: list[tuple[str, str]] = [
    ("ConnectionError",         "connection_error"),
    ("ConnectTimeout",          "connect_timeout"),
    ("ReadTimeout",             "read_timeout"),
    ("Timeout",                 "timeout"),
    ("SSLError",                "ssl_error"),
    ("TooManyRedirects",        "too_many_redirects"),
    ("ChunkedEncodingError",    "chunked_encoding_error"),
    ("ContentDecodingError",    "content_decoding_error"),
]


def sanitize_error_message(exc: Exception) -> str:
    """
    Convert an exception into a fixed-category string safe for use as a
    Prometheus label value.

    Never returns the raw str(exc): hostnames and ports in it would create a
    new time series on every run.
    """
    exc_type = type(exc).__name__

    for pattern, category in _ERROR_PATTERNS:
        if pattern in exc_type:
            return category

    return exc_type[:64]


class MetricsCollector:
    """
    Prometheus metrics collector for a refresh run.

    Per-source:
      - blocklist_refresh_source_status{source}            1 = success, 0 = failed
      - blocklist_refresh_source_entries{source}           entries fetched
      - blocklist_refresh_source_duration_seconds{source}  fetch time
      - blocklist_refresh_errors{source, message}          sanitized category

    Aggregate:
      - blocklist_refresh_new_entries / _existing_ips / _written_entries
      - blocklist_refresh_sources_successful / _failed
      - blocklist_refresh_last_run_timestamp
      - blocklist_refresh_duration_seconds (histogram)

    The registry is created fresh for every run and stale series are deleted
    from the Pushgateway before each push.
    """

    JOB = "blocklist-refresh"

    def __init__(self, pushgateway_url: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.pushgateway_url = pushgateway_url
        self.logger = logger or logging.getLogger("blocklist-refresh")
        self.registry = CollectorRegistry()

        self.source_status = Gauge(
            "blocklist_refresh_source_status",
            "Per-source fetch status: 1=success, 0=failed",
            ["source"],
            registry=self.registry,
        )
        self.source_entries = Gauge(
            "blocklist_refresh_source_entries",
            "Number of entries fetched from each source in the last run",
            ["source"],
            registry=self.registry,
        )
        self.source_duration_seconds = Gauge(
            "blocklist_refresh_source_duration_seconds",
            "Time taken to fetch each source (seconds)",
            ["source"],
            registry=self.registry,
        )
        self.errors = Gauge(
            "blocklist_refresh_errors",
            "Fetch errors labelled by source and sanitized message category",
            ["source", "message"],
            registry=self.registry,
        )
        self.new_entries = Gauge(
            "blocklist_refresh_new_entries",
            "Number of entries collected from remote sources in the last run",
            registry=self.registry,
        )
        self.existing_ips = Gauge(
            "blocklist_refresh_existing_ips",
            "Number of IPs found in the blocklist file before the last run",
            registry=self.registry,
        )
        self.written_entries = Gauge(
            "blocklist_refresh_written_entries",
            "Number of entries appended to the blocklist file in the last run",
            registry=self.registry,
        )
        self.sources_successful = Gauge(
            "blocklist_refresh_sources_successful",
            "Number of sources successfully fetched in the last run",
            registry=self.registry,
        )
        self.sources_failed = Gauge(
            "blocklist_refresh_sources_failed",
            "Number of sources that failed to fetch in the last run",
            registry=self.registry,
        )
        self.last_run_timestamp = Gauge(
            "blocklist_refresh_last_run_timestamp",
            "Unix timestamp of the last refresh run",
            registry=self.registry,
        )
        self.duration_seconds = Histogram(
            "blocklist_refresh_duration_seconds",
            "Duration of a full refresh run in seconds",
            buckets=[1, 5, 10, 30, 60, 120, 300],
            registry=self.registry,
        )

    def record_result(self, result: "FetchResult") -> None:
        """Record the outcome of one source fetch."""
        name = result.source.name
        self.source_status.labels(source=name).set(1 if result.success else 0)
        self.source_entries.labels(source=name).set(result.entry_count)
        self.source_duration_seconds.labels(source=name).set(result.duration)
        if not result.success:
            if result.error_exc is not None:
                message = sanitize_error_message(result.error_exc)
            else:
                message = f"http_{result.status_code}"
            self.errors.labels(source=name, message=message).set(1)

    def update_aggregates(self, stats: "RefreshStats") -> None:
        """Update scalar gauges at end of run."""
        self.new_entries.set(stats.new_entries)
        self.existing_ips.set(stats.existing_ips)
        self.written_entries.set(stats.written)
        self.sources_successful.set(stats.sources_ok)
        self.sources_failed.set(stats.sources_failed)
        self.last_run_timestamp.set(time.time())
        self.duration_seconds.observe(stats.duration_seconds)

    def push(self) -> bool:
        """Push all metrics to the Pushgateway, removing last run's series first."""
        if not self.pushgateway_url:
            return False
        try:
            try:
                delete_from_gateway(self.pushgateway_url, job=self.JOB)
            except Exception as del_exc:
                self.logger.warning(
                    f"Could not delete stale metrics from Pushgateway "
                    f"({self.pushgateway_url}): {del_exc}"
                )

            push_to_gateway(self.pushgateway_url, job=self.JOB, registry=self.registry)
            self.logger.info(f"Metrics pushed to Pushgateway at {self.pushgateway_url}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False


# =============================================================================
# HTTP Client
# =============================================================================

def create_http_session(max_retries: int = 0) -> requests.Session:
    """
    Create an HTTP session, optionally retrying with exponential backoff.

    A response that is still failing after the last retry is returned as is,
    so callers judge it by status code.
    """
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=1,  # 1s, 2s, 4s...
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


# =============================================================================
# Refresher
# =============================================================================

@dataclass
class FetchResult:
    """Result of fetching one remote source."""
    source: RemoteSource
    success: bool
    entry_count: int = 0
    duration: float = 0.0
    error_type: str = ""                    # "http_status" | "transport"
    status_code: Optional[int] = None
    error_exc: Optional[Exception] = None


@dataclass
class RefreshStats:
    """Statistics from a refresh run."""
    results: list[FetchResult] = field(default_factory=list)
    sources_ok: int = 0
    sources_failed: int = 0
    new_entries: int = 0
    existing_ips: int = 0
    merged: int = 0
    written: int = 0
    read_failed: bool = False
    write_skipped: bool = False
    duration_seconds: float = 0.0


def decode_line(raw_line: bytes | str) -> str:
    """Decode a response line, falling back to latin-1 for non UTF-8 bytes."""
    if isinstance(raw_line, str):
        return raw_line
    try:
        return raw_line.decode("utf-8")
    except UnicodeDecodeError:
        return raw_line.decode("latin-1")


class BlocklistRefresher:
    """
    Refreshes the banned IP file from remote sources.

    Every call to run() fetches all sources, re-reads the file, merges and
    appends. Nothing is carried over between runs.
    """

    def __init__(
        self,
        config: Config,
        session: requests.Session,
        logger: logging.Logger,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.session = session
        self.logger = logger
        self.metrics = metrics
        self.pattern = ipv4_pattern(config.strict_ipv4)

    def fetch_source(self, source: RemoteSource) -> tuple[list[str], FetchResult]:
        """
        Fetch a single source.

        Returns (entries, FetchResult). Failures are logged and reported in
        the result, never raised.
        """
        entries: list[str] = []
        t0 = time.time()

        try:
            self.logger.debug(f"Fetching {source.name} from {source.url}")

            with self.session.get(source.url, timeout=self.config.fetch_timeout, stream=True) as response:
                if response.status_code != 200:
                    self.logger.error(ERROR_CALLING_WEB_SERVICE_MESSAGE.format(url=source.url))
                    self.logger.debug(f"{source.name}: HTTP {response.status_code}")
                    return entries, FetchResult(
                        source=source,
                        success=False,
                        duration=time.time() - t0,
                        error_type="http_status",
                        status_code=response.status_code,
                    )

                # iter_lines splits on CR/LF
                for raw_line in response.iter_lines():
                    if not raw_line:
                        continue
                    line = decode_line(raw_line)
                    if source.parser == PARSER_IPV4:
                        entries.extend(extract_ips(line, self.pattern))
                    else:
                        entries.append(line)

        except Exception as e:
            self.logger.error(ERROR_CALLING_WEB_SERVICE_MESSAGE.format(url=source.url))
            self.logger.debug(f"{source.name}: {e}")
            return [], FetchResult(
                source=source,
                success=False,
                duration=time.time() - t0,
                error_type="transport",
                error_exc=e,
            )

        self.logger.debug(f"{source.name}: {len(entries)} entries")
        return entries, FetchResult(
            source=source,
            success=True,
            entry_count=len(entries),
            duration=time.time() - t0,
        )

    def read_existing(self) -> tuple[list[str], Set[str]]:
        """
        Read the blocklist file.

        Returns (ips, lines): every IPv4 address found in the file, and the
        set of its stripped non-blank lines. Raises OSError if the file
        cannot be read.
        """
        ips: list[str] = []
        lines: Set[str] = set()
        with open(self.config.blocklist_file, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                stripped = line.rstrip("\r\n")
                if stripped:
                    lines.add(stripped)
                ips.extend(extract_ips(stripped, self.pattern))
        return ips, lines

    def write_entries(self, entries: list[str], stats: RefreshStats) -> None:
        """
        Append entries to the blocklist file, one per line.

        stats.written counts lines flushed to the file, so it stays accurate
        when an OSError interrupts the loop.
        """
        with open(self.config.blocklist_file, "a", encoding="utf-8") as f:
            for entry in entries:
                f.write(f"{entry}\n")
                f.flush()
                stats.written += 1

    def run(self) -> RefreshStats:
        """Run one refresh: fetch, read, merge, append."""
        stats = RefreshStats()
        start_time = time.time()

        new_ips: list[str] = []
        for source in self.config.sources:
            entries, result = self.fetch_source(source)
            stats.results.append(result)
            if result.success:
                stats.sources_ok += 1
            else:
                stats.sources_failed += 1
            if self.metrics:
                self.metrics.record_result(result)
            new_ips.extend(entries)

        stats.new_entries = len(new_ips)
        self.logger.info(
            f"Sources: {stats.sources_ok} successful, {stats.sources_failed} unavailable, "
            f"{stats.new_entries} entries fetched"
        )

        try:
            old_ips, known_lines = self.read_existing()
        except OSError as e:
            self.logger.error(f"Error reading banned IP file {self.config.blocklist_file}: {e}")
            stats.read_failed = True
            return self._finish(stats, start_time)

        stats.existing_ips = len(old_ips)
        self.logger.debug(f"Found {len(old_ips)} IPs in {self.config.blocklist_file}")

        merged = merge_ips(new_ips, old_ips)
        stats.merged = len(merged)

        if not merged:
            self.logger.error(ERROR_ADD_BANNED_IP_MESSAGE)
            stats.write_skipped = True
            return self._finish(stats, start_time)

        known = known_lines.union(old_ips)
        to_write = [entry for entry in merged if entry not in known]

        if not to_write:
            self.logger.info(f"No new entries, {self.config.blocklist_file} is up to date")
        elif self.config.dry_run:
            self.logger.info(f"DRY RUN: Would append {len(to_write)} entries to {self.config.blocklist_file}")
        else:
            try:
                self.write_entries(to_write, stats)
                self.logger.info(f"Appended {stats.written} new entries to {self.config.blocklist_file}")
            except OSError as e:
                self.logger.error(ERROR_ADD_BANNED_IP_MESSAGE)
                self.logger.debug(f"{self.config.blocklist_file}: {e} ({stats.written} of {len(to_write)} entries appended)")

        return self._finish(stats, start_time)

    def _finish(self, stats: RefreshStats, start_time: float) -> RefreshStats:
        stats.duration_seconds = time.time() - start_time
        if self.metrics:
            self.metrics.update_aggregates(stats)
            self.metrics.push()
        self.logger.info(f"Completed in {stats.duration_seconds:.1f}s")
        return stats


# =============================================================================
# CLI
# =============================================================================

def setup_logging(config: Config) -> logging.Logger:
    """Configure plain-text logging to stdout."""
    logger = logging.getLogger("blocklist-refresh")
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logger.level)

    format = "[%(asctime)s] [%(levelname)s] %(message)s" if config.log_timestamps else "[%(levelname)s] %(message)s"
    formatter = logging.Formatter(
        format,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)
    return logger


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Refresh a local banned IP file from public IP blocklists",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  BLOCKLIST_FILE           Banned IP file to refresh (default: banned_ip.txt)
  BLOCKLIST_SOURCES        Comma-separated source URLs (default: built-in list)
  SOURCE_PARSER            lines or ipv4 (default: lines)
  FETCH_TIMEOUT            Seconds per HTTP request (default: 60)
  MAX_RETRIES              Retries per source on 429/5xx (default: 0)
  STRICT_IPV4              Reject octets with leading zeros (default: false)
  DRY_RUN                  Set to true for dry run mode
  LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
  LOG_TIMESTAMPS           Prefix log lines with a timestamp (default: true)
  METRICS_ENABLED          Push Prometheus metrics (default: false)
  METRICS_PUSHGATEWAY_URL  Pushgateway address (default: localhost:9091)

Examples:
  # Refresh the default file from the default sources
  ./blocklist_refresh.py

  # Refresh a specific file from a single source, strict matching
  ./blocklist_refresh.py -f /etc/app/banned_ip.txt -s https://example.org/ips.txt --strict
""",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-n", "--dry-run",
        action="store_true",
        help="Don't write the file, just show what would be done",
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "-f", "--file",
        help="Banned IP file (overrides BLOCKLIST_FILE)",
    )

    parser.add_argument(
        "-s", "--source",
        action="append",
        metavar="URL",
        help="Source URL, repeatable (replaces BLOCKLIST_SOURCES)",
    )

    parser.add_argument(
        "--strict",
        action="store_true",
        help="Reject IPv4 octets with leading zeros",
    )

    parser.add_argument(
        "--timeout",
        type=int,
        metavar="SECONDS",
        help="HTTP timeout per source (overrides FETCH_TIMEOUT)",
    )

    parser.add_argument(
        "--list-sources",
        action="store_true",
        help="List configured sources and exit",
    )

    parser.add_argument(
        "--pushgateway-url",
        help="Pushgateway address (overrides METRICS_PUSHGATEWAY_URL)",
    )

    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Disable Prometheus metrics",
    )

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = Config.from_env()
    except ValueError as e:
        logging.getLogger("blocklist-refresh").error(f"Configuration error: {e}")
        return 1

    if args.dry_run:
        config.dry_run = True
    if args.debug:
        config.log_level = "DEBUG"
    if args.file:
        config.blocklist_file = args.file
    if args.source:
        config.sources = sources_from_urls(args.source, config.source_parser)
    if args.strict:
        config.strict_ipv4 = True
    if args.timeout is not None:
        config.fetch_timeout = args.timeout
    if args.pushgateway_url:
        config.pushgateway_url = args.pushgateway_url
    if args.no_metrics:
        config.metrics_enabled = False

    logger = setup_logging(config)

    if not config.sources:
        logger.error("Configuration error: no blocklist sources configured")
        return 1

    if args.list_sources:
        logger.info(f"Blocklist Refresh v{__version__}")
        list_sources(config.sources, logger)
        return 0

    metrics = None
    if config.metrics_enabled:
        metrics = MetricsCollector(pushgateway_url=config.pushgateway_url, logger=logger)

    try:
        logger.info(f"Blocklist Refresh v{__version__}")
        if config.dry_run:
            logger.info("DRY RUN MODE - the file will not be modified")

        with create_http_session(config.max_retries) as session:
            stats = BlocklistRefresher(config, session, logger, metrics).run()

        if stats.read_failed or stats.sources_ok == 0:
            return 1
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if config.log_level == "DEBUG":
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
