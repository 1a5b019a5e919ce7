# checks/dmarc.py

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import tldextract

from .dkim import DKIMStatus
from .dns import DNSResolver, NXDOMAIN, ResolutionError, extract_domain
from .spf import SPFStatus

logger = logging.getLogger("mailsentry.dmarc")

POLICIES = ("none", "quarantine", "reject")
ALIGNMENT_MODES = ("r", "s")

# Bundled public suffix snapshot; never fetched over the network.
_extract = tldextract.TLDExtract(suffix_list_urls=())


class DMARCStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    NONE = "NONE"
    TEMPERROR = "TEMPERROR"
    PERMERROR = "PERMERROR"


class DMARCRecordError(ValueError):
    """A _dmarc TXT record that is not a usable DMARC1 policy."""


def organizational_domain(domain):
    """Registered domain of ``domain`` per the public suffix list."""
    domain = (domain or "").lower().rstrip(".")
    return _extract(domain).top_domain_under_public_suffix or domain


def is_aligned(auth_domain, from_domain, mode="r"):
    """Identifier alignment: exact match when strict, same organisational domain when relaxed."""
    if not auth_domain or not from_domain:
        return False
    auth_domain = auth_domain.lower().rstrip(".")
    from_domain = from_domain.lower().rstrip(".")
    if mode == "s":
        return auth_domain == from_domain
    return organizational_domain(auth_domain) == organizational_domain(from_domain)


def parse_rua(value):
    """Extract mailbox addresses from a ``rua`` tag (``mailto:`` URIs only)."""
    addresses = []
    for uri in (value or "").split(","):
        uri = uri.strip()
        if not uri.lower().startswith("mailto:"):
            continue
        address = uri[len("mailto:"):].split("!", 1)[0].strip()
        if address:
            addresses.append(address)
    return addresses


def parse_dmarc_record(record):
    """Parse a DMARC record into a lower-cased tag map.

    Raises ``DMARCRecordError`` when ``v=DMARC1`` or a valid ``p`` is missing.
    """
    tags = {}
    for part in record.split(";"):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        tags[name.strip().lower()] = value.strip()
    if tags.get("v", "").upper() != "DMARC1":
        raise DMARCRecordError("Record does not declare v=DMARC1")
    if tags.get("p", "").lower() not in POLICIES:
        raise DMARCRecordError("Record has no valid p= policy")
    return tags


@dataclass(frozen=True)
class DMARCPolicy:
    """A published DMARC policy."""

    domain: str
    record: str
    tags: dict
    from_organizational_domain: bool = False

    @property
    def p(self):
        return self.tags["p"].lower()

    @property
    def sp(self):
        sp = self.tags.get("sp", "").lower()
        return sp if sp in POLICIES else None

    @property
    def adkim(self):
        mode = self.tags.get("adkim", "r").lower()
        return mode if mode in ALIGNMENT_MODES else "r"

    @property
    def aspf(self):
        mode = self.tags.get("aspf", "r").lower()
        return mode if mode in ALIGNMENT_MODES else "r"

    @property
    def pct(self):
        try:
            return max(0, min(100, int(self.tags.get("pct", "100"))))
        except ValueError:
            return 100

    @property
    def rua(self):
        return parse_rua(self.tags.get("rua"))

    def policy_for(self, from_domain):
        """The policy that governs ``from_domain`` (``sp`` for subdomains)."""
        if self.from_organizational_domain and from_domain != self.domain:
            return self.sp or self.p
        return self.p


@dataclass(frozen=True)
class DMARCResult:
    status: DMARCStatus
    domain: str
    policy: Optional[str] = None
    policy_map: dict = field(default_factory=dict)
    record: Optional[str] = None
    disposition: str = "none"
    spf_aligned: bool = False
    dkim_aligned: bool = False
    details: str = ""

    def to_dict(self):
        return {
            "status": self.status.value,
            "domain": self.domain,
            "policy": self.policy,
            "policy_map": dict(self.policy_map),
            "disposition": self.disposition,
            "spf_aligned": self.spf_aligned,
            "dkim_aligned": self.dkim_aligned,
            "details": self.details,
        }

    def __str__(self):
        return f"DMARC {self.status.value} for {self.domain} (p={self.policy}, disposition={self.disposition})"


class DMARCEvaluator:
    """Resolve a From domain's DMARC policy and apply alignment to SPF/DKIM results."""

    def __init__(self, resolver=None, malformed_as_permerror=False):
        self.resolver = resolver or DNSResolver()
        self.malformed_as_permerror = malformed_as_permerror

    def fetch_policy(self, domain):
        """Published policy for ``domain``, falling back to its organisational domain.

        Returns None when neither publishes a record. Raises ``DMARCRecordError``
        for a malformed record and ``ResolutionError`` for transient DNS faults.
        """
        domain = domain.lower().rstrip(".")
        policy = self._lookup(domain)
        if policy is None:
            org_domain = organizational_domain(domain)
            if org_domain != domain:
                logger.debug("No DMARC at %s, checking organisational domain %s", domain, org_domain)
                policy = self._lookup(org_domain, from_organizational_domain=True)
        return policy

    def _lookup(self, domain, from_organizational_domain=False):
        try:
            records = self.resolver.lookup_txt(f"_dmarc.{domain}")
        except ResolutionError as e:
            if e.kind == NXDOMAIN:
                return None
            raise
        if not records:
            return None
        candidates = [r.strip() for r in records if r.strip().upper().startswith("V=DMARC1")]
        if not candidates:
            logger.debug("Ignoring non-DMARC TXT records at _dmarc.%s", domain)
            return None
        record = candidates[0]
        tags = parse_dmarc_record(record)
        logger.debug("Found DMARC for %s: %s", domain, record)
        return DMARCPolicy(domain, record, tags, from_organizational_domain)

    def evaluate(self, from_address, spf_result, dkim_result):
        domain = extract_domain(from_address)
        try:
            policy = self.fetch_policy(domain)
        except ResolutionError as e:
            logger.warning("DMARC lookup failed for %s: %s", domain, e)
            return DMARCResult(DMARCStatus.TEMPERROR, domain, details=str(e))
        except DMARCRecordError as e:
            logger.info("Malformed DMARC record for %s: %s", domain, e)
            status = DMARCStatus.PERMERROR if self.malformed_as_permerror else DMARCStatus.NONE
            return DMARCResult(status, domain, details=f"Malformed DMARC record: {e}")

        if policy is None:
            return DMARCResult(DMARCStatus.NONE, domain, details="No DMARC record found")

        spf_aligned = bool(
            spf_result is not None
            and spf_result.status == SPFStatus.PASS
            and is_aligned(spf_result.domain, domain, policy.aspf)
        )
        dkim_aligned = bool(
            dkim_result is not None
            and dkim_result.status == DKIMStatus.PASS
            and is_aligned(dkim_result.domain, domain, policy.adkim)
        )

        if spf_aligned or dkim_aligned:
            status = DMARCStatus.PASS
            disposition = "none"
        else:
            status = DMARCStatus.FAIL
            disposition = policy.policy_for(domain)

        details = f"spf_aligned={spf_aligned}, dkim_aligned={dkim_aligned}"
        logger.debug("DMARC %s for %s (%s)", status.value, domain, details)
        return DMARCResult(
            status,
            domain,
            policy=policy.policy_for(domain),
            policy_map=dict(policy.tags),
            record=policy.record,
            disposition=disposition,
            spf_aligned=spf_aligned,
            dkim_aligned=dkim_aligned,
            details=details,
        )
