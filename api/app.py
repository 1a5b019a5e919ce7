# api/app.py

"""
FastAPI application exposing MailSentry validation, DNSBL and DMARC reporting.

Launch with: python3 mailsentry.py serve [--port 8080]
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from checks.aggregate import DmarcReporter
from checks.config import Settings
from checks.dnsbl import DNSBLChecker
from checks.dns import DNSResolver
from checks.store import AuthStore
from checks.validation import EmailValidator, InboundMessage

logger = logging.getLogger("mailsentry.api")

MAX_BATCH_IPS = 50

# --- App Setup ---

app = FastAPI(
    title="MailSentry API",
    description="Sender authentication, DMARC aggregate reporting and DNSBL reputation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    """The collaborators the endpoints share, built once per process."""

    def __init__(self, settings=None, store=None, resolver=None, delivery=None):
        self.settings = settings or Settings.from_env()
        self.store = store or AuthStore(self.settings.db_path)
        self.resolver = resolver or DNSResolver(self.settings.nameservers, self.settings.dns_timeout)
        self.validator = EmailValidator(self.settings, self.resolver, self.store)
        self.checker = DNSBLChecker(self.settings, self.resolver, self.store)
        self.reporter = DmarcReporter(self.settings, self.store, delivery, self.resolver)
        self.checker.initialize_default_blacklists()


@lru_cache(maxsize=None)
def get_services():
    return Services()


# --- Request Models ---

class ValidateRequest(BaseModel):
    raw_message: str
    sender_ip: str
    mail_from: Optional[str] = None
    message_id: Optional[str] = None


class BatchDNSBLRequest(BaseModel):
    ips: list[str]
    timeout: Optional[float] = None


class ReportRequest(BaseModel):
    domain: str
    start: datetime
    end: datetime
    send: bool = False


# --- Validation ---

@app.post("/api/validate")
async def validate(req: ValidateRequest, services: Services = Depends(get_services)):
    """Run SPF, DKIM and DMARC for one raw message."""
    loop = asyncio.get_running_loop()
    message = InboundMessage.from_raw(req.raw_message, message_id=req.message_id, mail_from=req.mail_from)
    verdict = await loop.run_in_executor(None, services.validator.validate_email, message, req.sender_ip)
    return {"status": "ok", "verdict": verdict.to_dict()}


# --- DNSBL ---

@app.get("/api/dnsbl/stats")
async def dnsbl_stats(services: Services = Depends(get_services)):
    """Blacklist query statistics."""
    return {"status": "ok", "stats": services.checker.get_statistics()}


@app.get("/api/dnsbl/{ip}")
async def dnsbl_check(
    ip: str,
    timeout: Optional[float] = Query(None, gt=0, description="Overall time limit in seconds"),
    services: Services = Depends(get_services),
):
    """Check one IPv4 address against every active blacklist."""
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None, lambda: services.checker.check_ip_address(ip.strip(), timeout=timeout)
    )
    return {"status": "ok", "result": result.to_dict()}


@app.post("/api/dnsbl/batch")
async def dnsbl_batch(req: BatchDNSBLRequest, services: Services = Depends(get_services)):
    """Check several IPv4 addresses sequentially."""
    ips = [ip.strip() for ip in req.ips if ip.strip()]
    if not ips:
        return {"status": "error", "error": "No IP addresses provided"}
    if len(ips) > MAX_BATCH_IPS:
        return {"status": "error", "error": f"Maximum {MAX_BATCH_IPS} IP addresses per request"}

    loop = asyncio.get_running_loop()
    results = await loop.run_in_executor(
        None, lambda: services.checker.batch_check_ips(ips, timeout=req.timeout)
    )
    return {"status": "ok", "count": len(results), "results": [r.to_dict() for r in results]}


# --- DMARC aggregate reports ---

@app.post("/api/dmarc/reports")
async def generate_report(req: ReportRequest, services: Services = Depends(get_services)):
    """Generate (or fetch the existing) report for a domain and window."""
    if req.end <= req.start:
        return {"status": "error", "error": "end must be after start"}

    loop = asyncio.get_running_loop()
    report = await loop.run_in_executor(
        None, services.reporter.generate_aggregate_report, req.domain.strip().lower(), req.start, req.end
    )
    if report is None:
        return {"status": "error", "error": "DMARC report generation is disabled"}
    if req.send and not report.is_sent:
        report = await loop.run_in_executor(None, services.reporter.send_dmarc_report, report.report_id)
    return {"status": "ok", "report": report.to_dict()}


@app.get("/api/dmarc/reports/{report_id}")
async def get_report(report_id: str, services: Services = Depends(get_services)):
    """A stored report with its records."""
    report = services.reporter.get_report(report_id)
    if report is None:
        return {"status": "error", "error": "Report not found"}
    records = [r.to_row() for r in services.reporter.get_report_records(report)]
    return {"status": "ok", "report": report.to_dict(), "records": records}


@app.post("/api/dmarc/reports/{report_id}/send")
async def send_report(report_id: str, services: Services = Depends(get_services)):
    """Send a report to its rua recipients. Already-sent reports are returned unchanged."""
    loop = asyncio.get_running_loop()
    try:
        report = await loop.run_in_executor(None, services.reporter.send_dmarc_report, report_id)
    except KeyError:
        return {"status": "error", "error": "Report not found"}
    return {"status": "ok", "report": report.to_dict()}


@app.get("/api/health")
async def health():
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}
