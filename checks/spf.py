# checks/spf.py

"""
SPF (RFC 7208) evaluation of a sender IP against a domain's published policy.

Mechanisms are evaluated left to right and the first match decides the
result. ``include`` and ``redirect`` recurse with a visited-domain set and a
shared ten-lookup DNS limit, so loops and runaway fan-out end in PERMERROR.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .dns import DNSResolver, NXDOMAIN, ResolutionError, extract_domain

logger = logging.getLogger("mailsentry.spf")

# RFC 7208 section 4.6.4
MAX_DNS_LOOKUPS = 10
MAX_MX_HOSTS = 10
MAX_INCLUDE_DEPTH = 10

MECHANISM_RE = re.compile(r"^(all|include|a|mx|ptr|ip4|ip6|exists)(?=$|[:/])(.*)$", re.IGNORECASE)
MODIFIER_RE = re.compile(r"^([a-z][a-z0-9_.\-]*)=(.*)$", re.IGNORECASE)
CIDR_RE = re.compile(r"^(?:/(\d{1,2}))?(?://(\d{1,3}))?$")


class SPFStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SOFTFAIL = "SOFTFAIL"
    NEUTRAL = "NEUTRAL"
    NONE = "NONE"
    TEMPERROR = "TEMPERROR"
    PERMERROR = "PERMERROR"


QUALIFIERS = {
    "+": SPFStatus.PASS,
    "-": SPFStatus.FAIL,
    "~": SPFStatus.SOFTFAIL,
    "?": SPFStatus.NEUTRAL,
}


@dataclass(frozen=True)
class SPFResult:
    status: SPFStatus
    domain: str
    record: Optional[str] = None
    details: str = ""

    def to_dict(self):
        return {
            "status": self.status.value,
            "domain": self.domain,
            "record": self.record,
            "details": self.details,
        }

    def __str__(self):
        return f"SPF {self.status.value} for {self.domain}: {self.details or self.record or ''}".rstrip(": ")


@dataclass(frozen=True)
class SPFTerm:
    """One parsed mechanism or modifier."""

    name: str
    qualifier: str = "+"
    value: Optional[str] = None
    cidr4: int = 32
    cidr6: int = 128
    is_modifier: bool = False


class SPFPermError(Exception):
    """The policy cannot be evaluated as published."""


class SPFTempError(Exception):
    """A DNS lookup failed transiently during evaluation."""


def _parse_cidr(text, term):
    match = CIDR_RE.match(text)
    if not match:
        raise SPFPermError(f"Invalid CIDR length in '{term}'")
    cidr4 = int(match.group(1)) if match.group(1) else 32
    cidr6 = int(match.group(2)) if match.group(2) else 128
    if cidr4 > 32 or cidr6 > 128:
        raise SPFPermError(f"CIDR length out of range in '{term}'")
    return cidr4, cidr6


def parse_term(term):
    """Parse a single whitespace-delimited SPF term into an ``SPFTerm``."""
    qualifier = "+"
    body = term
    if body[:1] in QUALIFIERS:
        qualifier, body = body[0], body[1:]
    else:
        modifier = MODIFIER_RE.match(body)
        if modifier:
            return SPFTerm(name=modifier.group(1).lower(), value=modifier.group(2), is_modifier=True)

    # Some publishers write "redirect:domain"; treat it as the modifier.
    if body.lower().startswith("redirect:"):
        return SPFTerm(name="redirect", value=body.split(":", 1)[1], is_modifier=True)

    match = MECHANISM_RE.match(body)
    if not match:
        raise SPFPermError(f"Unknown SPF term '{term}'")
    name = match.group(1).lower()
    rest = match.group(2)

    if name == "all":
        if rest:
            raise SPFPermError(f"'all' takes no argument: '{term}'")
        return SPFTerm(name=name, qualifier=qualifier)

    if name in ("ip4", "ip6"):
        if not rest.startswith(":") or len(rest) < 2:
            raise SPFPermError(f"'{name}' requires a network: '{term}'")
        value = rest[1:]
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError:
            raise SPFPermError(f"Invalid network in '{term}'")
        if (name == "ip4") != (network.version == 4):
            raise SPFPermError(f"Address family mismatch in '{term}'")
        return SPFTerm(name=name, qualifier=qualifier, value=str(network))

    if name in ("a", "mx"):
        domain = None
        if rest.startswith(":"):
            domain, slash, cidr = rest[1:].partition("/")
            cidr = slash + cidr
            if not domain:
                raise SPFPermError(f"Empty domain in '{term}'")
        else:
            cidr = rest
        cidr4, cidr6 = _parse_cidr(cidr, term)
        return SPFTerm(name=name, qualifier=qualifier, value=domain, cidr4=cidr4, cidr6=cidr6)

    # include, exists, ptr
    value = rest[1:] if rest.startswith(":") else None
    if rest and not rest.startswith(":"):
        raise SPFPermError(f"Malformed term '{term}'")
    if name in ("include", "exists") and not value:
        raise SPFPermError(f"'{name}' requires a domain: '{term}'")
    return SPFTerm(name=name, qualifier=qualifier, value=value)


def parse_record(record):
    """Tokenise an SPF record (without evaluating it)."""
    tokens = record.split()
    if not tokens or tokens[0].lower() != "v=spf1":
        raise SPFPermError("Record does not start with v=spf1")
    return [parse_term(token) for token in tokens[1:]]


def select_spf_record(records):
    """First TXT record that is an SPF policy, or None."""
    for record in records:
        cleaned = record.strip().strip('"')
        lowered = cleaned.lower()
        if lowered == "v=spf1" or lowered.startswith("v=spf1 "):
            return cleaned
    return None


class _Evaluation:
    """Per-evaluation state shared across include/redirect recursion."""

    def __init__(self, ip):
        self.ip = ip
        self.lookups = 0

    def count_lookup(self, term):
        self.lookups += 1
        if self.lookups > MAX_DNS_LOOKUPS:
            raise SPFPermError(f"More than {MAX_DNS_LOOKUPS} DNS lookups (at '{term}')")


class SPFEvaluator:
    """Evaluate SPF for (from address, sender IP) pairs."""

    def __init__(self, resolver=None):
        self.resolver = resolver or DNSResolver()

    def evaluate(self, from_address, sender_ip):
        domain = extract_domain(from_address)
        try:
            ip = ipaddress.ip_address(str(sender_ip).strip())
        except ValueError:
            logger.warning("Invalid sender IP for SPF check: %r", sender_ip)
            return SPFResult(SPFStatus.PERMERROR, domain, details=f"Invalid sender IP {sender_ip!r}")
        if ip.version == 6 and ip.ipv4_mapped:
            ip = ip.ipv4_mapped

        if not domain:
            return SPFResult(SPFStatus.NONE, domain, details="No domain to check")

        state = _Evaluation(ip)
        try:
            status, record = self._check_host(domain, state, visited=frozenset(), depth=0)
        except SPFTempError as e:
            logger.warning("SPF temporary error for %s: %s", domain, e)
            return SPFResult(SPFStatus.TEMPERROR, domain, details=str(e))
        except SPFPermError as e:
            logger.info("SPF permanent error for %s: %s", domain, e)
            return SPFResult(SPFStatus.PERMERROR, domain, details=str(e))

        if status == SPFStatus.NONE:
            return SPFResult(status, domain, details="No SPF record found")
        logger.debug("SPF %s for %s from %s", status.value, domain, ip)
        return SPFResult(status, domain, record=record, details=f"{ip} evaluated against {domain}")

    def _fetch_record(self, domain):
        try:
            records = self.resolver.lookup_txt(domain)
        except ResolutionError as e:
            if e.kind == NXDOMAIN:
                return None
            raise SPFTempError(str(e))
        return select_spf_record(records)

    def _check_host(self, domain, state, visited, depth):
        if depth > MAX_INCLUDE_DEPTH:
            raise SPFPermError(f"Include depth exceeded at {domain}")
        if domain in visited:
            raise SPFPermError(f"Include loop detected at {domain}")
        visited = visited | {domain}

        record = self._fetch_record(domain)
        if record is None:
            return SPFStatus.NONE, None

        terms = parse_record(record)
        redirect = None
        for term in terms:
            if term.is_modifier:
                if term.name == "redirect":
                    redirect = term.value
                continue
            if self._matches(term, domain, state, visited, depth):
                logger.debug("SPF term %s%s matched for %s", term.qualifier, term.name, domain)
                return QUALIFIERS[term.qualifier], record

        if redirect:
            state.count_lookup(f"redirect={redirect}")
            status, _ = self._check_host(redirect.lower(), state, visited, depth + 1)
            if status == SPFStatus.NONE:
                raise SPFPermError(f"Redirect target {redirect} has no SPF record")
            return status, record

        return SPFStatus.NEUTRAL, record

    def _matches(self, term, domain, state, visited, depth):
        ip = state.ip
        if term.name == "all":
            return True
        if term.name in ("ip4", "ip6"):
            network = ipaddress.ip_network(term.value, strict=False)
            return ip.version == network.version and ip in network
        if term.name == "a":
            state.count_lookup("a")
            return self._address_match(term.value or domain, term, ip)
        if term.name == "mx":
            state.count_lookup("mx")
            hosts = self._lookup(self.resolver.lookup_mx, term.value or domain)
            if len(hosts) > MAX_MX_HOSTS:
                raise SPFPermError(f"Too many MX hosts for {term.value or domain}")
            return any(self._address_match(host, term, ip) for host in hosts)
        if term.name == "include":
            state.count_lookup(f"include:{term.value}")
            status, _ = self._check_host(term.value.lower(), state, visited, depth + 1)
            if status == SPFStatus.PASS:
                return True
            if status == SPFStatus.NONE:
                raise SPFPermError(f"Included domain {term.value} has no SPF record")
            return False
        # ptr and exists: counted, never matched (no macro expansion).
        state.count_lookup(term.name)
        logger.debug("SPF '%s' mechanism is not evaluated for %s", term.name, domain)
        return False

    def _address_match(self, host, term, ip):
        if ip.version == 4:
            addresses = self._lookup(self.resolver.lookup_a, host)
            prefix = term.cidr4
        else:
            addresses = self._lookup(self.resolver.lookup_aaaa, host)
            prefix = term.cidr6
        for address in addresses:
            network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
            if ip in network:
                return True
        return False

    @staticmethod
    def _lookup(func, name):
        try:
            return func(name)
        except ResolutionError as e:
            if e.kind == NXDOMAIN:
                return []
            raise SPFTempError(str(e))
