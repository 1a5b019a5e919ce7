# checks/dns.py

import logging
from email.utils import parseaddr

import dns.exception
import dns.resolver

logger = logging.getLogger("mailsentry.dns")

NXDOMAIN = "NXDOMAIN"
TIMEOUT = "TIMEOUT"
SERVFAIL = "SERVFAIL"


class ResolutionError(Exception):
    """A DNS lookup that failed for a reason other than an empty answer."""

    def __init__(self, kind, name, message=None):
        self.kind = kind
        self.name = name
        super().__init__(message or f"{kind} resolving {name}")

    @property
    def is_transient(self):
        return self.kind in (TIMEOUT, SERVFAIL)


class DNSResolver:
    """Thin wrapper around dnspython used by every evaluator.

    An empty answer is an empty list. NXDOMAIN, timeouts and server failures
    raise ``ResolutionError`` so callers can tell them apart.
    """

    def __init__(self, nameservers=None, timeout=5.0):
        self.nameservers = list(nameservers or [])
        self.timeout = timeout

    def _resolver(self, timeout):
        resolver = dns.resolver.Resolver()
        if self.nameservers:
            resolver.nameservers = self.nameservers
        resolver.timeout = timeout
        resolver.lifetime = timeout
        return resolver

    def _resolve(self, name, rdtype, timeout=None):
        timeout = self.timeout if timeout is None else timeout
        try:
            logger.debug("Querying %s %s", name, rdtype)
            return list(self._resolver(timeout).resolve(name, rdtype))
        except dns.resolver.NXDOMAIN:
            logger.debug("%s does not exist (NXDOMAIN)", name)
            raise ResolutionError(NXDOMAIN, name)
        except dns.resolver.NoAnswer:
            logger.debug("No %s answer for %s", rdtype, name)
            return []
        except dns.exception.Timeout:
            logger.warning("%s query timeout for %s", rdtype, name)
            raise ResolutionError(TIMEOUT, name)
        except dns.resolver.NoNameservers:
            logger.warning("No nameservers available for %s %s", rdtype, name)
            raise ResolutionError(SERVFAIL, name)
        except dns.exception.DNSException as e:
            logger.warning("%s query for %s failed: %s", rdtype, name, e)
            raise ResolutionError(SERVFAIL, name, str(e))

    def lookup_txt(self, name):
        """Return the TXT records of ``name``, multi-string records joined."""
        records = []
        for rdata in self._resolve(name, "TXT"):
            records.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
        return records

    def lookup_a(self, name, timeout=None):
        return [rdata.address for rdata in self._resolve(name, "A", timeout)]

    def lookup_aaaa(self, name, timeout=None):
        return [rdata.address for rdata in self._resolve(name, "AAAA", timeout)]

    def lookup_mx(self, name):
        """Return MX exchange hostnames ordered by preference."""
        answers = sorted(self._resolve(name, "MX"), key=lambda r: r.preference)
        return [str(rdata.exchange).rstrip(".") for rdata in answers]


def extract_domain(address):
    """Domain part of an address; the whole string when there is no ``@``."""
    _, parsed = parseaddr(address or "")
    address = parsed or (address or "").strip()
    return address.rsplit("@", 1)[-1].strip().rstrip(".").lower()
