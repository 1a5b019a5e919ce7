# checks/validation.py

"""
Per-message SPF, DKIM and DMARC validation.

``EmailValidator.validate_email`` runs the three evaluators in order and
folds their outcomes into a single ``ValidationVerdict``. Unexpected errors
inside an evaluator become an ERROR verdict and never reach the caller.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from email.parser import HeaderParser
from enum import Enum
from typing import Optional

from .config import Settings
from .dkim import DKIMEvaluator, DKIMStatus, DKIMResult
from .dmarc import DMARCEvaluator, DMARCStatus, DMARCResult
from .dns import DNSResolver, extract_domain
from .spf import SPFEvaluator, SPFStatus, SPFResult

logger = logging.getLogger("mailsentry.validation")


class ValidationStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    ERROR = "ERROR"
    DISABLED = "DISABLED"


@dataclass
class InboundMessage:
    """A received message as handed over by the message store."""

    message_id: str
    from_address: str
    raw_content: str
    received_at: Optional[datetime] = None
    mail_from: Optional[str] = None

    @classmethod
    def from_raw(cls, raw, message_id=None, mail_from=None):
        """Build a message from its RFC 5322 source, reading From and Message-ID."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        headers = HeaderParser().parsestr(raw)
        return cls(
            message_id=message_id or (headers.get("Message-ID") or "").strip(),
            from_address=(headers.get("From") or "").strip(),
            raw_content=raw,
            received_at=datetime.now(timezone.utc),
            mail_from=mail_from,
        )


@dataclass(frozen=True)
class ValidationVerdict:
    message_id: str
    sender_ip: str
    from_address: str
    overall_status: ValidationStatus
    spf_result: Optional[SPFResult] = None
    dkim_result: Optional[DKIMResult] = None
    dmarc_result: Optional[DMARCResult] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def header_from(self):
        return extract_domain(self.from_address)

    @property
    def processing_time_ms(self):
        if not self.started_at or not self.finished_at:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self):
        return {
            "message_id": self.message_id,
            "sender_ip": self.sender_ip,
            "from_address": self.from_address,
            "header_from": self.header_from,
            "overall_status": self.overall_status.value,
            "spf": self.spf_result.to_dict() if self.spf_result else None,
            "dkim": self.dkim_result.to_dict() if self.dkim_result else None,
            "dmarc": self.dmarc_result.to_dict() if self.dmarc_result else None,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "processing_time_ms": self.processing_time_ms,
        }

    def __str__(self):
        return f"{self.message_id or '<no id>'} from {self.sender_ip}: {self.overall_status.value}"


def overall_status(spf_result, dkim_result, dmarc_result, strict_mode=False):
    """DMARC PASS wins; strict mode honours an explicit DMARC FAIL; else SPF or DKIM PASS."""
    if dmarc_result.status == DMARCStatus.PASS:
        return ValidationStatus.PASS
    if strict_mode and dmarc_result.status == DMARCStatus.FAIL:
        return ValidationStatus.FAIL
    if spf_result.status == SPFStatus.PASS or dkim_result.status == DKIMStatus.PASS:
        return ValidationStatus.PASS
    return ValidationStatus.FAIL


class EmailValidator:
    """Runs SPF, DKIM and DMARC for one message and optionally logs the verdict."""

    def __init__(self, settings=None, resolver=None, store=None):
        self.settings = settings or Settings()
        self.resolver = resolver or DNSResolver(self.settings.nameservers, self.settings.dns_timeout)
        self.store = store
        self.spf = SPFEvaluator(self.resolver)
        self.dkim = DKIMEvaluator(self.resolver)
        self.dmarc = DMARCEvaluator(
            self.resolver, malformed_as_permerror=self.settings.dmarc_malformed_as_permerror
        )

    def validate_email(self, message, sender_ip):
        started_at = datetime.now(timezone.utc)

        if not self.settings.validation_enabled:
            logger.debug("Validation disabled, skipping %s", message.message_id)
            return ValidationVerdict(
                message.message_id, sender_ip, message.from_address,
                ValidationStatus.DISABLED, started_at=started_at, finished_at=started_at,
            )

        spf_result = dkim_result = dmarc_result = None
        error_message = None
        try:
            spf_result = self.spf.evaluate(message.mail_from or message.from_address, sender_ip)
            dkim_result = self.dkim.evaluate(message)
            dmarc_result = self.dmarc.evaluate(message.from_address, spf_result, dkim_result)
            status = overall_status(spf_result, dkim_result, dmarc_result, self.settings.strict_mode)
        except Exception as e:
            logger.exception("Validation of %s failed", message.message_id)
            status = ValidationStatus.ERROR
            error_message = str(e) or type(e).__name__

        verdict = ValidationVerdict(
            message_id=message.message_id,
            sender_ip=sender_ip,
            from_address=message.from_address,
            overall_status=status,
            spf_result=spf_result,
            dkim_result=dkim_result,
            dmarc_result=dmarc_result,
            error_message=error_message,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        logger.info("Validated %s", verdict)

        if self.store is not None:
            self._save(verdict)
        return verdict

    def _save(self, verdict):
        try:
            self.store.save_validation_log(log_entry(verdict))
        except (sqlite3.Error, OSError) as e:
            logger.error("Could not save validation log for %s: %s", verdict.message_id, e)


def log_entry(verdict):
    """Column values of the validation log row for ``verdict``."""
    spf, dkim, dmarc = verdict.spf_result, verdict.dkim_result, verdict.dmarc_result
    return {
        "message_id": verdict.message_id,
        "from_address": verdict.from_address,
        "header_from": verdict.header_from,
        "sender_ip": verdict.sender_ip,
        "validation_status": verdict.overall_status.value,
        "spf_status": spf.status.value if spf else None,
        "spf_domain": spf.domain if spf else None,
        "spf_record": spf.record if spf else None,
        "dkim_status": dkim.status.value if dkim else None,
        "dkim_domain": dkim.domain if dkim else None,
        "dkim_selector": dkim.selector if dkim else None,
        "dmarc_status": dmarc.status.value if dmarc else None,
        "dmarc_policy": dmarc.policy if dmarc else None,
        "dmarc_disposition": dmarc.disposition if dmarc else None,
        "spf_aligned": int(bool(dmarc and dmarc.spf_aligned)),
        "dkim_aligned": int(bool(dmarc and dmarc.dkim_aligned)),
        "error_message": verdict.error_message,
        "details": json.dumps({
            "spf": spf.details if spf else None,
            "dkim": dkim.details if dkim else None,
            "dmarc": dmarc.details if dmarc else None,
        }),
        "processing_time_ms": verdict.processing_time_ms,
        "validated_at": verdict.finished_at,
    }
