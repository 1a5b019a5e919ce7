# checks/aggregate.py

"""
DMARC aggregate reporting (RFC 7489 section 7.2).

Validation logs for a reporting window are grouped by (source IP,
header-from domain) into count-bearing records, serialised to the
``<feedback>`` XML schema, gzip-compressed and mailed to the domain's
``rua`` addresses. There is at most one report per (domain, begin, end)
window; regenerating a window returns the stored report.
"""

import gzip
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from lxml import etree

from .config import Settings
from .delivery import SMTPDelivery
from .dmarc import DMARCEvaluator, DMARCRecordError
from .dns import DNSResolver, ResolutionError
from .store import AuthStore, from_db_time

logger = logging.getLogger("mailsentry.aggregate")

REPORT_CONTENT_TYPE = "application/gzip"
BACKOFF_BASE_MINUTES = 30

# Validation statuses as they appear in <auth_results>
DKIM_XML_RESULTS = {
    "PASS": "pass",
    "FAIL": "fail",
    "INVALID": "permerror",
    "NONE": "none",
    "TEMPERROR": "temperror",
}


class ReportStatus(str, Enum):
    CREATED = "CREATED"
    FILE_GENERATED = "FILE_GENERATED"
    SENT = "SENT"
    SEND_FAILED = "SEND_FAILED"
    ABANDONED = "ABANDONED"


def _utc(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _epoch(value):
    return int(_utc(value).timestamp())


@dataclass
class DmarcReportRecord:
    """One (source IP, header-from) group of a report."""

    source_ip: str
    header_from: str
    count: int
    disposition: str = "none"
    spf_domain: Optional[str] = None
    spf_result: Optional[str] = None
    spf_aligned: bool = False
    dkim_domain: Optional[str] = None
    dkim_result: Optional[str] = None
    dkim_selector: Optional[str] = None
    dkim_aligned: bool = False
    dmarc_result: Optional[str] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            source_ip=row["source_ip"],
            header_from=row["header_from"],
            count=row["count"],
            disposition=row["disposition"] or "none",
            spf_domain=row["spf_domain"],
            spf_result=row["spf_result"],
            spf_aligned=bool(row["spf_aligned"]),
            dkim_domain=row["dkim_domain"],
            dkim_result=row["dkim_result"],
            dkim_selector=row["dkim_selector"],
            dkim_aligned=bool(row["dkim_aligned"]),
            dmarc_result=row["dmarc_result"],
        )

    def to_row(self):
        return {
            "source_ip": self.source_ip,
            "header_from": self.header_from,
            "count": self.count,
            "disposition": self.disposition,
            "spf_domain": self.spf_domain,
            "spf_result": self.spf_result,
            "spf_aligned": int(self.spf_aligned),
            "dkim_domain": self.dkim_domain,
            "dkim_result": self.dkim_result,
            "dkim_selector": self.dkim_selector,
            "dkim_aligned": int(self.dkim_aligned),
            "dmarc_result": self.dmarc_result,
        }


@dataclass
class DmarcReport:
    id: int
    report_id: str
    domain: str
    org_name: str
    email: Optional[str]
    begin_time: datetime
    end_time: datetime
    policy_domain: Optional[str] = None
    policy_p: str = "none"
    policy_sp: Optional[str] = None
    policy_adkim: str = "r"
    policy_aspf: str = "r"
    policy_pct: int = 100
    rua: list = field(default_factory=list)
    total_messages: int = 0
    compliant_messages: int = 0
    failed_messages: int = 0
    status: ReportStatus = ReportStatus.CREATED
    is_sent: bool = False
    sent_at: Optional[datetime] = None
    recipient_uri: Optional[str] = None
    send_attempts: int = 0
    next_retry_at: Optional[datetime] = None
    report_path: Optional[str] = None
    report_size: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            report_id=row["report_id"],
            domain=row["domain"],
            org_name=row["org_name"],
            email=row["email"],
            begin_time=from_db_time(row["begin_time"]),
            end_time=from_db_time(row["end_time"]),
            policy_domain=row["policy_domain"],
            policy_p=row["policy_p"] or "none",
            policy_sp=row["policy_sp"],
            policy_adkim=row["policy_adkim"] or "r",
            policy_aspf=row["policy_aspf"] or "r",
            policy_pct=row["policy_pct"] if row["policy_pct"] is not None else 100,
            rua=[a for a in (row["rua"] or "").split(",") if a],
            total_messages=row["total_messages"],
            compliant_messages=row["compliant_messages"],
            failed_messages=row["failed_messages"],
            status=ReportStatus(row["status"]),
            is_sent=bool(row["is_sent"]),
            sent_at=from_db_time(row["sent_at"]),
            recipient_uri=row["recipient_uri"],
            send_attempts=row["send_attempts"],
            next_retry_at=from_db_time(row["next_retry_at"]),
            report_path=row["report_path"],
            report_size=row["report_size"] or 0,
            error_message=row["error_message"],
            created_at=from_db_time(row["created_at"]),
        )

    @property
    def compliance_rate(self):
        if not self.total_messages:
            return 0.0
        return self.compliant_messages / self.total_messages * 100.0

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "domain": self.domain,
            "org_name": self.org_name,
            "email": self.email,
            "begin_time": self.begin_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "policy": {
                "domain": self.policy_domain,
                "p": self.policy_p,
                "sp": self.policy_sp,
                "adkim": self.policy_adkim,
                "aspf": self.policy_aspf,
                "pct": self.policy_pct,
            },
            "rua": list(self.rua),
            "total_messages": self.total_messages,
            "compliant_messages": self.compliant_messages,
            "failed_messages": self.failed_messages,
            "compliance_rate": round(self.compliance_rate, 2),
            "status": self.status.value,
            "is_sent": self.is_sent,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "send_attempts": self.send_attempts,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "report_path": self.report_path,
            "report_size": self.report_size,
            "error_message": self.error_message,
        }

    def __str__(self):
        return f"{self.report_id} [{self.status.value}] {self.total_messages} messages"


def make_report_id(org_name, domain, begin_time, end_time):
    return "{}_{}_{}_{}".format(
        "_".join(org_name.split()).lower(),
        domain.replace(".", "_"),
        _epoch(begin_time),
        _epoch(end_time),
    )


def report_filename(report):
    """``<org>!<domain>!<begin>!<end>.xml.gz``, the name receivers expect."""
    return "{}!{}!{}!{}.xml.gz".format(
        "_".join(report.org_name.split()),
        report.domain,
        _epoch(report.begin_time),
        _epoch(report.end_time),
    )


def in_report_domain(header_from, domain):
    header_from = (header_from or "").lower().rstrip(".")
    return header_from == domain or header_from.endswith("." + domain)


def group_validation_logs(logs):
    """Fold validation log rows into one record per (sender IP, header-from).

    The first row of a group supplies its auth results; groups whose rows
    disagree are logged.
    """
    groups = {}
    for log in logs:
        key = (log["sender_ip"], (log["header_from"] or "").lower())
        groups.setdefault(key, []).append(log)

    records = []
    for (source_ip, header_from), entries in groups.items():
        first = entries[0]
        outcome = (first["spf_status"], first["dkim_status"], first["dmarc_status"])
        divergent = sum(
            1 for e in entries[1:]
            if (e["spf_status"], e["dkim_status"], e["dmarc_status"]) != outcome
        )
        if divergent:
            logger.warning(
                "%d of %d messages from %s for %s disagree with the reported auth results",
                divergent, len(entries), source_ip, header_from,
            )
        records.append(DmarcReportRecord(
            source_ip=source_ip,
            header_from=header_from,
            count=len(entries),
            disposition=first["dmarc_disposition"] or "none",
            spf_domain=first["spf_domain"],
            spf_result=first["spf_status"],
            spf_aligned=bool(first["spf_aligned"]),
            dkim_domain=first["dkim_domain"],
            dkim_result=first["dkim_status"],
            dkim_selector=first["dkim_selector"],
            dkim_aligned=bool(first["dkim_aligned"]),
            dmarc_result=first["dmarc_status"],
        ))
    return records


def _text(parent, tag, value):
    element = etree.SubElement(parent, tag)
    element.text = str(value)
    return element


def build_report_xml(report, records):
    """Serialise a report and its records as RFC 7489 ``<feedback>`` XML (UTF-8 bytes)."""
    root = etree.Element("feedback")

    metadata = etree.SubElement(root, "report_metadata")
    _text(metadata, "org_name", report.org_name)
    _text(metadata, "email", report.email or "")
    _text(metadata, "report_id", report.report_id)
    date_range = etree.SubElement(metadata, "date_range")
    _text(date_range, "begin", _epoch(report.begin_time))
    _text(date_range, "end", _epoch(report.end_time))

    published = etree.SubElement(root, "policy_published")
    _text(published, "domain", report.policy_domain or report.domain)
    _text(published, "adkim", report.policy_adkim)
    _text(published, "aspf", report.policy_aspf)
    _text(published, "p", report.policy_p)
    if report.policy_sp:
        _text(published, "sp", report.policy_sp)
    _text(published, "pct", report.policy_pct)

    for record in records:
        element = etree.SubElement(root, "record")
        row = etree.SubElement(element, "row")
        _text(row, "source_ip", record.source_ip)
        _text(row, "count", record.count)
        evaluated = etree.SubElement(row, "policy_evaluated")
        _text(evaluated, "disposition", record.disposition or "none")
        _text(evaluated, "dkim", "pass" if record.dkim_aligned else "fail")
        _text(evaluated, "spf", "pass" if record.spf_aligned else "fail")

        identifiers = etree.SubElement(element, "identifiers")
        _text(identifiers, "header_from", record.header_from)

        auth_results = etree.SubElement(element, "auth_results")
        if record.dkim_domain and record.dkim_result:
            dkim = etree.SubElement(auth_results, "dkim")
            _text(dkim, "domain", record.dkim_domain)
            if record.dkim_selector:
                _text(dkim, "selector", record.dkim_selector)
            _text(dkim, "result", DKIM_XML_RESULTS.get(record.dkim_result, "none"))
        spf = etree.SubElement(auth_results, "spf")
        _text(spf, "domain", record.spf_domain or record.header_from)
        _text(spf, "result", (record.spf_result or "none").lower())

    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)


class DmarcReporter:
    """Generates, stores, sends, retries and expires DMARC aggregate reports."""

    def __init__(self, settings=None, store=None, delivery=None, resolver=None):
        self.settings = settings or Settings()
        self.store = store or AuthStore(self.settings.db_path)
        self.delivery = delivery or SMTPDelivery.from_settings(self.settings)
        self.dmarc = DMARCEvaluator(resolver or DNSResolver(self.settings.nameservers, self.settings.dns_timeout))

    def _load(self, report_pk):
        return DmarcReport.from_row(self.store.get_report(report_pk))

    def _published_policy(self, domain):
        try:
            return self.dmarc.fetch_policy(domain)
        except (ResolutionError, DMARCRecordError) as e:
            logger.warning("Could not read DMARC policy for %s: %s", domain, e)
            return None

    def generate_aggregate_report(self, domain, start_time, end_time):
        """Build the report for ``[start_time, end_time)``, or return the existing one.

        The window is truncated to whole seconds, the resolution of the report id.
        """
        if not self.settings.dmarc_report_enabled:
            logger.info("DMARC report generation is disabled")
            return None

        domain = domain.lower().rstrip(".")
        start_time = _utc(start_time).replace(microsecond=0)
        end_time = _utc(end_time).replace(microsecond=0)
        report_id = make_report_id(self.settings.dmarc_org_name, domain, start_time, end_time)

        existing = self.store.get_report_by_report_id(report_id)
        if existing is not None:
            logger.info("DMARC report %s already exists", report_id)
            return DmarcReport.from_row(existing)

        policy = self._published_policy(domain)
        logs = [
            log for log in self.store.get_validation_logs(start_time, end_time)
            if in_report_domain(log["header_from"], domain)
        ]
        records = group_validation_logs(logs)
        compliant = sum(1 for log in logs if log["dmarc_status"] == "PASS")

        row, created = self.store.create_report_if_absent({
            "report_id": report_id,
            "domain": domain,
            "org_name": self.settings.dmarc_org_name,
            "email": self.settings.dmarc_contact_email,
            "begin_time": start_time,
            "end_time": end_time,
            "policy_domain": policy.domain if policy else domain,
            "policy_p": policy.p if policy else "none",
            "policy_sp": policy.sp if policy else None,
            "policy_adkim": policy.adkim if policy else "r",
            "policy_aspf": policy.aspf if policy else "r",
            "policy_pct": policy.pct if policy else 100,
            "rua": ",".join(policy.rua) if policy else "",
            "total_messages": len(logs),
            "compliant_messages": compliant,
            "failed_messages": len(logs) - compliant,
            "status": ReportStatus.CREATED.value,
        }, [r.to_row() for r in records])
        if not created:
            logger.info("DMARC report for %s %s - %s already exists", domain, start_time, end_time)
            return DmarcReport.from_row(row)

        report = DmarcReport.from_row(row)
        try:
            path, size = self._write_report_file(report, records)
        except OSError as e:
            logger.error("Could not write DMARC report file for %s: %s", report.report_id, e)
            self.store.update_report(report.id, error_message=f"Report file not written: {e}")
        else:
            self.store.update_report(report.id, report_path=path, report_size=size,
                                     status=ReportStatus.FILE_GENERATED.value)

        report = self._load(report.id)
        logger.info("Generated DMARC report %s with %d records", report, len(records))
        return report

    def _write_report_file(self, report, records):
        os.makedirs(self.settings.dmarc_storage_path, exist_ok=True)
        path = os.path.join(self.settings.dmarc_storage_path, report_filename(report))
        with gzip.open(path, "wb") as f:
            f.write(build_report_xml(report, records))
        return path, os.path.getsize(path)

    def get_report(self, report_id):
        row = self.store.get_report_by_report_id(report_id)
        return DmarcReport.from_row(row) if row else None

    def get_report_records(self, report):
        return [DmarcReportRecord.from_row(r) for r in self.store.get_report_records(report.id)]

    def send_dmarc_report(self, report_id):
        """Mail a report to its ``rua`` recipients. A sent report is left alone.

        Raises ``KeyError`` for an unknown report id.
        """
        report = self.get_report(report_id)
        if report is None:
            raise KeyError(report_id)
        if report.is_sent:
            logger.debug("DMARC report %s already sent", report_id)
            return report
        if report.status == ReportStatus.ABANDONED:
            logger.info("DMARC report %s was abandoned, not sending", report_id)
            return report

        if not report.report_path or not os.path.exists(report.report_path):
            try:
                path, size = self._write_report_file(report, self.get_report_records(report))
            except OSError as e:
                return self._send_failed(report, f"Report file not available: {e}")
            self.store.update_report(report.id, report_path=path, report_size=size)
            report = self._load(report.id)

        if not report.rua:
            return self._send_failed(report, "No rua recipient published")

        subject = f"Report Domain: {report.domain} Submitter: {report.org_name} Report-ID: {report.report_id}"
        body = (
            f"This is a DMARC aggregate report for {report.domain}\n\n"
            f"Report Period: {report.begin_time:%Y-%m-%dT%H:%M:%S} to {report.end_time:%Y-%m-%dT%H:%M:%S}\n"
            f"Total Messages: {report.total_messages}\n"
            f"Compliant Messages: {report.compliant_messages}\n"
            f"Compliance Rate: {report.compliance_rate:.2f}%\n\n"
            "Please find the detailed report in the attached file."
        )

        delivered, errors = [], []
        for recipient in report.rua:
            try:
                ok = self.delivery.send_with_attachment(
                    report.email, recipient, subject, body, report.report_path, REPORT_CONTENT_TYPE
                )
            except Exception as e:
                logger.warning("Delivery of %s to %s raised: %s", report.report_id, recipient, e)
                ok = False
                errors.append(f"{recipient}: {e}")
            else:
                if not ok:
                    errors.append(f"{recipient}: rejected")
            if ok:
                delivered.append(recipient)

        if not delivered:
            return self._send_failed(report, "; ".join(errors))

        if errors:
            logger.warning("DMARC report %s not delivered to all recipients: %s", report_id, "; ".join(errors))
        self.store.update_report(
            report.id,
            is_sent=1,
            sent_at=datetime.now(timezone.utc),
            status=ReportStatus.SENT.value,
            recipient_uri=",".join(delivered),
            error_message=None,
        )
        logger.info("Sent DMARC report %s to %s", report_id, ", ".join(delivered))
        return self._load(report.id)

    def _send_failed(self, report, error_message):
        attempts = report.send_attempts + 1
        next_retry_at = datetime.now(timezone.utc) + timedelta(
            minutes=2 ** min(attempts, 6) * BACKOFF_BASE_MINUTES
        )
        row = self.store.record_send_failure(
            report.id, error_message, next_retry_at, self.settings.dmarc_max_send_attempts
        )
        report = DmarcReport.from_row(row)
        logger.warning("DMARC report %s send failed (attempt %d): %s",
                       report.report_id, report.send_attempts, error_message)
        return report

    def retry_failed_reports(self):
        """Resend reports whose backoff has elapsed."""
        now = datetime.now(timezone.utc)
        results = []
        for row in self.store.find_reports_needing_retry(now, self.settings.dmarc_max_send_attempts):
            logger.info("Retrying DMARC report %s (attempt %d)", row["report_id"], row["send_attempts"] + 1)
            results.append(self.send_dmarc_report(row["report_id"]))
        return results

    def generate_periodic_reports(self, domains=None):
        """Generate (and send, when non-empty) the latest window for each domain."""
        domains = domains if domains is not None else self.settings.dmarc_report_domains
        end_time = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        start_time = end_time - timedelta(hours=self.settings.dmarc_generation_interval_hours)

        reports = []
        for domain in domains:
            try:
                report = self.generate_aggregate_report(domain, start_time, end_time)
                if report is None:
                    continue
                if report.total_messages > 0 and not report.is_sent:
                    report = self.send_dmarc_report(report.report_id)
                reports.append(report)
            except Exception:
                logger.exception("Periodic DMARC report for %s failed", domain)
        return reports

    def cleanup_expired_reports(self, retention_days=None):
        """Delete reports (rows, records and files) older than the retention period."""
        if retention_days is None:
            retention_days = self.settings.dmarc_retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed = 0
        for row in self.store.find_reports_created_before(cutoff):
            path = row["report_path"]
            if path and os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as e:
                    logger.warning("Could not remove report file %s: %s", path, e)
            self.store.delete_report(row["id"])
            removed += 1
        if removed:
            logger.info("Removed %d expired DMARC reports", removed)
        return removed
