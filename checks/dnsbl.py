# checks/dnsbl.py

"""
DNS blackhole list (DNSBL) reputation checks for sender IPv4 addresses.

Every active zone is queried for ``<reversed-ip>.<zone>`` on a bounded
thread pool. A single zone's failure is recorded against that zone only;
the scan always covers the full list so the audit record is complete.
"""

import ipaddress
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .config import Settings
from .dns import DNSResolver, NXDOMAIN, ResolutionError
from .store import AuthStore

logger = logging.getLogger("mailsentry.dnsbl")

HIGH_THREAT_WEIGHT = 5.0

SPAMHAUS_CODES = {
    "127.0.0.2": "SBL - Spamhaus spam source",
    "127.0.0.3": "SBL - Spamhaus spam source (CSS)",
    "127.0.0.4": "XBL - exploited or hijacked host",
    "127.0.0.5": "XBL - exploited or hijacked host",
    "127.0.0.6": "XBL - exploited or hijacked host",
    "127.0.0.7": "XBL - exploited or hijacked host",
    "127.0.0.9": "SBL - DROP/EDROP hijacked network",
    "127.0.0.10": "PBL - ISP policy block list",
    "127.0.0.11": "PBL - Spamhaus policy block list",
}

# Answers Spamhaus gives instead of a listing when it refuses the query.
SPAMHAUS_ERROR_CODES = {
    "127.255.255.252": "Typing error in DNSBL name",
    "127.255.255.254": "Query via public/open resolver",
    "127.255.255.255": "Excessive number of queries",
}

SORBS_CODES = {
    "127.0.0.2": "Open HTTP proxy",
    "127.0.0.3": "Open SOCKS proxy",
    "127.0.0.4": "Open proxy (misc)",
    "127.0.0.5": "Open SMTP relay",
    "127.0.0.6": "Spam source",
    "127.0.0.7": "Vulnerable web server",
    "127.0.0.8": "Confirmed spam source (do not mail)",
    "127.0.0.9": "Hijacked network",
    "127.0.0.10": "Dynamic IP address space",
    "127.0.0.11": "Bad DNS configuration",
    "127.0.0.12": "No-mail domain",
    "127.0.0.14": "Non-dynamic IP address space",
}


class CheckStatus(str, Enum):
    CLEAN = "CLEAN"
    LISTED = "LISTED"
    ERROR = "ERROR"
    DISABLED = "DISABLED"
    INVALID = "INVALID"


class RiskLevel(str, Enum):
    CLEAN = "CLEAN"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class BlacklistHit:
    list_name: str
    hostname: str
    return_code: str
    description: str
    weight: float

    def to_dict(self):
        return {
            "list_name": self.list_name,
            "hostname": self.hostname,
            "return_code": self.return_code,
            "description": self.description,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class QueryResult:
    """Outcome of one zone query, kept for the audit record."""

    list_name: str
    hostname: str
    query_host: str
    listed: bool = False
    return_code: Optional[str] = None
    description: Optional[str] = None
    error: bool = False
    error_message: Optional[str] = None
    query_time_ms: int = 0

    def to_dict(self):
        return {
            "list_name": self.list_name,
            "hostname": self.hostname,
            "query_host": self.query_host,
            "listed": self.listed,
            "return_code": self.return_code,
            "description": self.description,
            "error": self.error,
            "error_message": self.error_message,
            "query_time_ms": self.query_time_ms,
        }


@dataclass(frozen=True)
class BlacklistCheckResult:
    ip_address: str
    status: CheckStatus
    hits: tuple = ()
    total_weight: float = 0.0
    risk_level: RiskLevel = RiskLevel.CLEAN
    query_results: tuple = ()
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    checked_lists: int = 0

    @property
    def hit_count(self):
        return len(self.hits)

    @property
    def processing_time_ms(self):
        if not self.started_at or not self.finished_at:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self):
        return {
            "ip_address": self.ip_address,
            "status": self.status.value,
            "risk_level": self.risk_level.value,
            "hit_count": self.hit_count,
            "total_weight": self.total_weight,
            "hits": [h.to_dict() for h in self.hits],
            "query_results": [q.to_dict() for q in self.query_results],
            "checked_lists": self.checked_lists,
            "error_message": self.error_message,
            "processing_time_ms": self.processing_time_ms,
        }

    def __str__(self):
        return (f"{self.ip_address}: {self.status.value} "
                f"(risk {self.risk_level.value}, {self.hit_count} hits, weight {self.total_weight:g})")


def reverse_ip(ip):
    return ".".join(reversed(ip.split(".")))


def risk_level(hits):
    total = sum(hit.weight for hit in hits)
    if any(hit.weight >= HIGH_THREAT_WEIGHT for hit in hits) or total >= 10 or len(hits) >= 5:
        return RiskLevel.HIGH
    if total >= 5 or len(hits) >= 3:
        return RiskLevel.MEDIUM
    if hits:
        return RiskLevel.LOW
    return RiskLevel.CLEAN


def interpret_return_code(hostname, code):
    """Human-readable meaning of a zone's A-record answer."""
    hostname = hostname.lower()
    if "spamhaus" in hostname:
        return SPAMHAUS_CODES.get(code, f"Listed on Spamhaus (return code {code})")
    if "spamcop" in hostname:
        return "Listed by SpamCop user reports"
    if "barracuda" in hostname:
        return "Poor reputation at Barracuda"
    if "sorbs" in hostname:
        return SORBS_CODES.get(code, f"Listed on SORBS (return code {code})")
    return f"Listed on {hostname} (return code {code})"


def display_name(hostname):
    for marker, name in (("spamhaus", "Spamhaus"), ("spamcop", "SpamCop"),
                         ("barracuda", "Barracuda"), ("sorbs", "SORBS"),
                         ("uceprotect", "UCEPROTECT")):
        if marker in hostname:
            return name
    return hostname.upper()


def describe(hostname):
    if "spamhaus" in hostname:
        return "Spamhaus project composite anti-spam blocklist"
    if "spamcop" in hostname:
        return "SpamCop list of user-reported spam sources"
    if "barracuda" in hostname:
        return "Barracuda Networks reputation database"
    if "sorbs" in hostname:
        return "SORBS open relay and spam source database"
    return f"DNS blacklist service: {hostname}"


def default_weight(hostname):
    if "spamhaus" in hostname or "spamcop" in hostname:
        return 5.0
    if "barracuda" in hostname or "sorbs" in hostname:
        return 3.0
    return 2.0


def format_check_details(result):
    if not result.hits:
        return "No blacklist listings found"
    listed = ", ".join(f"{hit.list_name} ({hit.description})" for hit in result.hits)
    return f"Listed on: {listed}"


class DNSBLChecker:
    """Weighted multi-zone DNSBL lookups with per-zone counters kept in the store."""

    def __init__(self, settings=None, resolver=None, store=None):
        self.settings = settings or Settings()
        self.resolver = resolver or DNSResolver(self.settings.nameservers, self.settings.dnsbl_timeout)
        self.store = store or AuthStore(self.settings.db_path)

    def initialize_default_blacklists(self):
        """Seed the configured default zones. Existing rows are left untouched."""
        added = 0
        for hostname, weight in self.settings.dnsbl_default_lists.items():
            hostname = hostname.lower()
            inserted = self.store.seed_blacklist({
                "hostname": hostname,
                "display_name": display_name(hostname),
                "description": describe(hostname),
                "weight": weight if weight is not None else default_weight(hostname),
                "is_active": 1,
                "query_timeout_ms": int(self.settings.dnsbl_timeout * 1000),
            })
            if inserted:
                added += 1
                logger.info("Added default blacklist %s", hostname)
        return added

    def check_ip_address(self, ip, message=None, timeout=None):
        """Check ``ip`` against every active zone.

        ``timeout`` bounds the whole scan; zones still pending when it expires
        are reported as query errors and their counters are left alone.
        """
        started_at = datetime.now(timezone.utc)
        ip = (ip or "").strip()

        if not self.settings.dnsbl_enabled:
            return BlacklistCheckResult(ip, CheckStatus.DISABLED, started_at=started_at,
                                        finished_at=started_at)

        try:
            ipaddress.IPv4Address(ip)
        except ValueError:
            logger.info("Rejecting invalid IPv4 address %r", ip)
            return BlacklistCheckResult(ip, CheckStatus.INVALID, error_message=f"Invalid IPv4 address: {ip}",
                                        started_at=started_at, finished_at=datetime.now(timezone.utc))

        blacklists = self.store.get_blacklists(active_only=True)
        query_results = self._query_all(blacklists, reverse_ip(ip), timeout)

        hits = []
        for blacklist, query in zip(blacklists, query_results):
            if query.listed:
                hits.append(BlacklistHit(blacklist["display_name"], blacklist["hostname"],
                                         query.return_code, query.description, blacklist["weight"]))

        if hits:
            status = CheckStatus.LISTED
        elif query_results and all(q.error for q in query_results):
            status = CheckStatus.ERROR
        else:
            status = CheckStatus.CLEAN

        result = BlacklistCheckResult(
            ip_address=ip,
            status=status,
            hits=tuple(hits),
            total_weight=sum(hit.weight for hit in hits),
            risk_level=risk_level(hits),
            query_results=tuple(query_results),
            error_message="All blacklist queries failed" if status == CheckStatus.ERROR else None,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            checked_lists=len(blacklists),
        )
        logger.info("DNSBL check %s", result)

        if message is not None:
            self._save_check_log(result, message)
        return result

    def _query_all(self, blacklists, reversed_ip, timeout):
        if not blacklists:
            return []
        pool = ThreadPoolExecutor(max_workers=max(1, self.settings.dnsbl_max_concurrent))
        try:
            futures = [pool.submit(self._query, bl, reversed_ip) for bl in blacklists]
            done, _ = wait(futures, timeout=timeout)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        results = []
        for blacklist, future in zip(blacklists, futures):
            query_host = f"{reversed_ip}.{blacklist['hostname']}"
            if future not in done:
                logger.warning("Abandoned DNSBL query %s after overall timeout", query_host)
                results.append(QueryResult(blacklist["display_name"], blacklist["hostname"], query_host,
                                           error=True, error_message="Check timed out before query finished"))
                continue
            error = future.exception()
            if error is not None:
                logger.error("DNSBL query %s raised %s", query_host, error)
                query = QueryResult(blacklist["display_name"], blacklist["hostname"], query_host,
                                    error=True, error_message=str(error))
            else:
                query = future.result()
            self.store.increment_blacklist_counters(blacklist["id"], query.listed)
            results.append(query)
        return results

    def _query(self, blacklist, reversed_ip):
        hostname = blacklist["hostname"]
        name = blacklist["display_name"]
        query_host = f"{reversed_ip}.{hostname}"
        timeout = blacklist["query_timeout_ms"] / 1000.0
        start = time.monotonic()
        try:
            addresses = self.resolver.lookup_a(query_host, timeout=timeout)
        except ResolutionError as e:
            elapsed = int((time.monotonic() - start) * 1000)
            if e.kind == NXDOMAIN:
                return QueryResult(name, hostname, query_host, query_time_ms=elapsed)
            logger.warning("DNSBL query %s failed: %s", query_host, e)
            return QueryResult(name, hostname, query_host, error=True,
                               error_message=str(e), query_time_ms=elapsed)
        elapsed = int((time.monotonic() - start) * 1000)

        if not addresses:
            return QueryResult(name, hostname, query_host, query_time_ms=elapsed)

        code = addresses[0]
        if "spamhaus" in hostname and code in SPAMHAUS_ERROR_CODES:
            logger.warning("Spamhaus refused query %s: %s", query_host, SPAMHAUS_ERROR_CODES[code])
            return QueryResult(name, hostname, query_host, return_code=code, error=True,
                               error_message=SPAMHAUS_ERROR_CODES[code], query_time_ms=elapsed)

        description = interpret_return_code(hostname, code)
        logger.debug("%s listed on %s: %s", reversed_ip, hostname, description)
        return QueryResult(name, hostname, query_host, listed=True, return_code=code,
                           description=description, query_time_ms=elapsed)

    def _save_check_log(self, result, message):
        message_id = getattr(message, "message_id", message)
        self.store.save_dnsbl_check_log({
            "message_id": message_id,
            "ip_address": result.ip_address,
            "check_status": result.status.value,
            "hit_count": result.hit_count,
            "total_weight": result.total_weight,
            "risk_level": result.risk_level.value,
            "blacklists_checked": result.checked_lists,
            "check_details": format_check_details(result),
            "processing_time_ms": result.processing_time_ms,
            "checked_at": result.finished_at,
        })

    def batch_check_ips(self, ips, timeout=None):
        """Check several IPs one after another, pausing between them."""
        results = []
        for index, ip in enumerate(ips):
            if index and self.settings.dnsbl_batch_delay > 0:
                time.sleep(self.settings.dnsbl_batch_delay)
            try:
                results.append(self.check_ip_address(ip, timeout=timeout))
            except Exception as e:
                logger.exception("DNSBL check for %s failed", ip)
                now = datetime.now(timezone.utc)
                results.append(BlacklistCheckResult(ip, CheckStatus.ERROR, error_message=str(e),
                                                    started_at=now, finished_at=now))
        return results

    def get_statistics(self):
        stats = self.store.blacklist_statistics()
        total_queries = stats["total_queries"]
        stats["hit_rate"] = (stats["total_hits"] / total_queries * 100) if total_queries else 0.0
        return stats
