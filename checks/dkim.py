# checks/dkim.py

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import dkim

from .dns import DNSResolver, NXDOMAIN, ResolutionError

logger = logging.getLogger("mailsentry.dkim")

# RFC 6376 section 3.5
REQUIRED_TAGS = ("v", "a", "b", "bh", "d", "h", "s")
SUPPORTED_ALGORITHMS = ("rsa-sha256", "rsa-sha1", "ed25519-sha256")
SUPPORTED_KEY_TYPES = ("rsa", "ed25519")
BASE64_TAGS = ("b", "bh", "p")
TAG_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


class DKIMStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    INVALID = "INVALID"
    NONE = "NONE"
    TEMPERROR = "TEMPERROR"


@dataclass(frozen=True)
class DKIMResult:
    status: DKIMStatus
    domain: Optional[str] = None
    selector: Optional[str] = None
    signature: Optional[str] = None
    details: str = ""

    def to_dict(self):
        return {
            "status": self.status.value,
            "domain": self.domain,
            "selector": self.selector,
            "details": self.details,
        }

    def __str__(self):
        where = f" ({self.selector}._domainkey.{self.domain})" if self.domain and self.selector else ""
        return f"DKIM {self.status.value}{where}: {self.details}"


class DKIMTagError(ValueError):
    """A tag list that does not follow the tag=value grammar."""


def _as_text(raw):
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw or ""


def _as_bytes(raw):
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="surrogateescape")
    return re.sub(rb"\r?\n", b"\r\n", raw or b"")


def extract_dkim_signature(raw):
    """Return the unfolded value of the first DKIM-Signature header, or None.

    Only the header section (up to the first empty line) is searched.
    """
    header_section = re.split(r"\r?\n\r?\n", _as_text(raw), maxsplit=1)[0]
    lines = header_section.splitlines()
    for index, line in enumerate(lines):
        if not line.lower().startswith("dkim-signature:"):
            continue
        value = line.split(":", 1)[1]
        for continuation in lines[index + 1:]:
            if continuation[:1] not in (" ", "\t"):
                break
            value += continuation
        return value.strip()
    return None


def parse_tag_list(value):
    """Parse a ``tag=value; tag=value`` list (signature or key record)."""
    tags = {}
    for part in value.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise DKIMTagError(f"Malformed tag '{part}'")
        name, tag_value = part.split("=", 1)
        name = name.strip()
        if not TAG_NAME_RE.match(name):
            raise DKIMTagError(f"Invalid tag name '{name}'")
        if name in tags:
            raise DKIMTagError(f"Duplicate tag '{name}'")
        if name in BASE64_TAGS:
            tags[name] = re.sub(r"\s+", "", tag_value)
        else:
            tags[name] = tag_value.strip()
    return tags


def signature_problem(tags):
    """Describe why a parsed signature is unusable, or return None."""
    missing = [tag for tag in REQUIRED_TAGS if not tags.get(tag)]
    if missing:
        return f"Missing required tag(s): {', '.join(missing)}"
    if tags["v"] != "1":
        return f"Unsupported version v={tags['v']}"
    if tags["a"].lower() not in SUPPORTED_ALGORITHMS:
        return f"Unsupported algorithm a={tags['a']}"
    signed = [h.strip().lower() for h in tags["h"].split(":")]
    if "from" not in signed:
        return "From header is not signed"
    domain = tags["d"].lower()
    identity = tags.get("i")
    if identity:
        identity_domain = identity.rsplit("@", 1)[-1].lower()
        if identity_domain != domain and not identity_domain.endswith("." + domain):
            return f"Identity i={identity} is outside d={domain}"
    for tag in ("t", "x"):
        if tag in tags and not tags[tag].isdigit():
            return f"Invalid timestamp {tag}={tags[tag]}"
    return None


class DKIMEvaluator:
    """Verify the first DKIM-Signature of a message.

    The public key is resolved through the injected resolver and handed to
    dkimpy via its ``dnsfunc`` hook, which then does canonicalisation and
    the signature check.
    """

    def __init__(self, resolver=None, minkey=1024):
        self.resolver = resolver or DNSResolver()
        self.minkey = minkey

    def evaluate(self, message):
        raw = getattr(message, "raw_content", message)
        signature = extract_dkim_signature(raw)
        if not signature:
            return DKIMResult(DKIMStatus.NONE, details="No DKIM-Signature header")

        try:
            tags = parse_tag_list(signature)
        except DKIMTagError as e:
            return DKIMResult(DKIMStatus.INVALID, signature=signature, details=str(e))

        domain = tags.get("d", "").lower() or None
        selector = tags.get("s") or None
        if not domain or not selector:
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature,
                              "Signature lacks d= or s=")

        problem = signature_problem(tags)
        if problem:
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature, problem)

        try:
            key_record = self.lookup_public_key(domain, selector)
        except ResolutionError as e:
            logger.warning("DKIM key lookup failed for %s._domainkey.%s: %s", selector, domain, e)
            return DKIMResult(DKIMStatus.TEMPERROR, domain, selector, signature, str(e))
        if key_record is None:
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature,
                              f"No DKIM key at {selector}._domainkey.{domain}")

        try:
            key_tags = parse_tag_list(key_record)
        except DKIMTagError as e:
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature, f"Bad key record: {e}")
        if not key_tags.get("p"):
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature, "Key has been revoked (empty p=)")
        key_type = key_tags.get("k", "rsa").lower()
        if key_type not in SUPPORTED_KEY_TYPES:
            return DKIMResult(DKIMStatus.INVALID, domain, selector, signature, f"Unsupported key type k={key_type}")

        if "x" in tags and int(tags["x"]) < time.time():
            return DKIMResult(DKIMStatus.FAIL, domain, selector, signature, "Signature has expired")

        if self._verify(raw, key_record):
            logger.debug("DKIM signature verified for d=%s s=%s", domain, selector)
            return DKIMResult(DKIMStatus.PASS, domain, selector, signature, "Signature verified")
        logger.info("DKIM signature mismatch for d=%s s=%s", domain, selector)
        return DKIMResult(DKIMStatus.FAIL, domain, selector, signature, "Signature did not verify")

    def lookup_public_key(self, domain, selector):
        """Return the key TXT record at ``<selector>._domainkey.<domain>``.

        None when the name does not exist or carries no record.
        Transient failures raise ``ResolutionError``.
        """
        name = f"{selector}._domainkey.{domain}"
        try:
            records = self.resolver.lookup_txt(name)
        except ResolutionError as e:
            if e.kind == NXDOMAIN:
                return None
            raise
        for record in records:
            if "p=" in record:
                return record
        return records[0] if records else None

    def _verify(self, raw, key_record):
        record = key_record.encode("utf-8")

        def dnsfunc(name, timeout=5):
            return record

        return bool(dkim.verify(_as_bytes(raw), dnsfunc=dnsfunc, minkey=self.minkey))
