#! /usr/bin/env python3

# mailsentry.py
import argparse
import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone

from checks.config import Settings
from checks.store import AuthStore
from checks.validation import EmailValidator, InboundMessage
from checks.dnsbl import DNSBLChecker
from checks.aggregate import DmarcReporter
from checks import report


def load_message(path, mail_from=None):
    with open(path, "rb") as f:
        return InboundMessage.from_raw(f.read(), mail_from=mail_from)


async def validate_messages(validator, paths, sender_ip, mail_from=None, concurrency=10):
    """Validate message files concurrently; DNS-bound work runs in the thread pool."""
    loop = asyncio.get_running_loop()
    semaphore = asyncio.Semaphore(concurrency)

    async def validate_one(path):
        async with semaphore:
            message = await loop.run_in_executor(None, load_message, path, mail_from)
            return await loop.run_in_executor(None, validator.validate_email, message, sender_ip)

    results = await asyncio.gather(*(validate_one(p) for p in paths), return_exceptions=True)
    verdicts = []
    for path, result in zip(paths, results):
        if isinstance(result, Exception):
            logging.error("Failed to validate %s: %s", path, result)
        else:
            verdicts.append(result)
    return verdicts


def parse_time(value):
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def write_output(results, output):
    if output == "stdout" or not results:
        return
    rows = [r.to_dict() for r in results]
    if output == "json":
        report.output_json(rows)
    elif output == "csv":
        report.write_to_csv(rows)
        print("Results written to output.csv")
    elif output == "xls":
        report.write_to_excel(rows)
        print("Results written to output.xlsx")


def build_parser():
    parser = argparse.ArgumentParser(
        description="MailSentry: SPF, DKIM and DMARC validation of received mail, "
        "DMARC aggregate reporting, and DNSBL reputation checks."
    )
    parser.add_argument("--db", type=str, help="SQLite database path (default: ~/.mailsentry/mailsentry.db)")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging output",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Validate one or more raw RFC 5322 message files")
    validate.add_argument("files", nargs="+", help="Message files (.eml)")
    validate.add_argument("--ip", required=True, help="IP address of the connecting SMTP client")
    validate.add_argument("--mail-from", help="Envelope sender (MAIL FROM) used for SPF")
    validate.add_argument("--strict", action="store_true", help="Treat an explicit DMARC FAIL as overall FAIL")
    validate.add_argument("--no-save", action="store_true", help="Do not write validation logs")
    validate.add_argument(
        "-o",
        type=str,
        choices=["stdout", "json", "csv", "xls"],
        default="stdout",
        help="Output format: stdout, json, csv, or xls (default: stdout).",
    )
    validate.add_argument(
        "-c",
        "--concurrency",
        type=int,
        default=10,
        help="Maximum concurrent validations (default: 10)",
    )

    dnsbl = sub.add_parser("dnsbl", help="Check IPv4 addresses against DNS blacklists")
    dnsbl.add_argument("ips", nargs="*", help="IPv4 addresses to check")
    dnsbl.add_argument("-iL", type=str, help="File containing a list of IP addresses to check.")
    dnsbl.add_argument("--timeout", type=float, help="Overall time limit per IP, in seconds")
    dnsbl.add_argument("--stats", action="store_true", help="Print blacklist query statistics")
    dnsbl.add_argument(
        "-o",
        type=str,
        choices=["stdout", "json", "csv", "xls"],
        default="stdout",
        help="Output format: stdout, json, csv, or xls (default: stdout).",
    )

    generate = sub.add_parser("report", help="Generate a DMARC aggregate report for a domain")
    generate.add_argument("domain", help="Domain the report covers")
    generate.add_argument("--start", help="Window start, ISO 8601 (default: end minus --hours)")
    generate.add_argument("--end", help="Window end, ISO 8601 (default: now, on the hour)")
    generate.add_argument("--hours", type=int, help="Window length in hours (default: generation interval)")
    generate.add_argument("--send", action="store_true", help="Mail the report to the rua recipients")

    sub.add_parser("retry", help="Resend DMARC reports whose previous delivery failed")
    sub.add_parser("periodic", help="Generate and send the latest report window for configured domains")

    cleanup = sub.add_parser("cleanup", help="Delete DMARC reports past their retention period")
    cleanup.add_argument("--days", type=int, help="Retention in days (default: from settings)")

    serve = sub.add_parser("serve", help="Launch the REST API server")
    serve.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the web server (default: 8080)",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = Settings.from_env()
    if args.db:
        settings.db_path = args.db

    if args.command == "serve":
        if args.db:
            os.environ["MAILSENTRY_DB_PATH"] = args.db
        import uvicorn
        from api.app import app as web_app

        print("\nMailSentry API")
        print(f"   http://localhost:{args.port}")
        print(f"   API docs: http://localhost:{args.port}/docs\n")
        uvicorn.run(web_app, host="0.0.0.0", port=args.port, log_level="info")
        return

    store = AuthStore(settings.db_path)

    if args.command == "validate":
        if args.strict:
            settings.strict_mode = True
        validator = EmailValidator(settings, store=None if args.no_save else store)
        verdicts = asyncio.run(
            validate_messages(validator, args.files, args.ip, args.mail_from, args.concurrency)
        )
        if args.o == "stdout":
            for verdict in verdicts:
                report.print_verdict(verdict)
        write_output(verdicts, args.o)

    elif args.command == "dnsbl":
        checker = DNSBLChecker(settings, store=store)
        added = checker.initialize_default_blacklists()
        if added:
            print(f"[*] Added {added} default blacklists")
        ips = list(args.ips)
        if args.iL:
            with open(args.iL, "r") as file:
                ips.extend(line.strip() for line in file if line.strip())
        if not ips and not args.stats:
            parser.error("dnsbl requires at least one IP address, -iL, or --stats")
        results = checker.batch_check_ips(ips, timeout=args.timeout)
        if args.o == "stdout":
            for result in results:
                report.print_dnsbl_result(result)
        write_output(results, args.o)
        if args.stats:
            stats = checker.get_statistics()
            report.output_message(
                "[*]",
                f"{stats['active_blacklists']}/{stats['total_blacklists']} lists active, "
                f"{stats['total_queries']} queries, {stats['total_hits']} hits "
                f"({stats['hit_rate']:.2f}% hit rate)",
                "indifferent",
            )

    elif args.command == "report":
        reporter = DmarcReporter(settings, store=store)
        hours = args.hours or settings.dmarc_generation_interval_hours
        end = parse_time(args.end) if args.end else datetime.now(timezone.utc).replace(
            minute=0, second=0, microsecond=0
        )
        start = parse_time(args.start) if args.start else end - timedelta(hours=hours)
        generated = reporter.generate_aggregate_report(args.domain, start, end)
        if generated is None:
            print("DMARC report generation is disabled.")
            return
        if args.send:
            generated = reporter.send_dmarc_report(generated.report_id)
        report.print_report(generated)

    elif args.command == "retry":
        reporter = DmarcReporter(settings, store=store)
        retried = reporter.retry_failed_reports()
        print(f"[*] Retried {len(retried)} reports")
        for item in retried:
            report.print_report(item)

    elif args.command == "periodic":
        reporter = DmarcReporter(settings, store=store)
        for item in reporter.generate_periodic_reports():
            report.print_report(item)

    elif args.command == "cleanup":
        reporter = DmarcReporter(settings, store=store)
        removed = reporter.cleanup_expired_reports(args.days)
        print(f"[*] Removed {removed} expired reports")


if __name__ == "__main__":
    main()
