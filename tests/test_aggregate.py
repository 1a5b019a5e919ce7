# tests/test_aggregate.py

"""Tests for DMARC aggregate report generation, delivery and retention."""

import gzip
import os
import shutil
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from lxml import etree

from checks.aggregate import (
    DmarcReport, DmarcReportRecord, DmarcReporter, ReportStatus, build_report_xml,
    group_validation_logs, report_filename,
)
from checks.config import Settings
from checks.store import AuthStore, to_db_time

from fake_dns import FakeResolver

BEGIN = datetime(2024, 3, 1, tzinfo=timezone.utc)
END = datetime(2024, 3, 2, tzinfo=timezone.utc)
DMARC_RECORD = (
    "v=DMARC1; p=quarantine; sp=reject; adkim=s; pct=50; "
    "rua=mailto:dmarc@example.com,mailto:agg@third.example"
)


def log_row(ip, header_from, hour=1, status="PASS", spf="PASS", dkim="PASS", dmarc="PASS",
            spf_aligned=1, dkim_aligned=1, disposition="none"):
    return {
        "message_id": f"<{ip}-{hour}@{header_from}>",
        "from_address": f"user@{header_from}",
        "header_from": header_from,
        "sender_ip": ip,
        "validation_status": status,
        "spf_status": spf,
        "spf_domain": header_from,
        "dkim_status": dkim,
        "dkim_domain": header_from,
        "dkim_selector": "sel1",
        "dmarc_status": dmarc,
        "dmarc_policy": "quarantine",
        "dmarc_disposition": disposition,
        "spf_aligned": spf_aligned,
        "dkim_aligned": dkim_aligned,
        "validated_at": BEGIN + timedelta(hours=hour),
    }


class TestGrouping(unittest.TestCase):

    def test_groups_by_ip_and_header_from(self):
        logs = [
            log_row("192.0.2.1", "example.com", 1),
            log_row("192.0.2.1", "example.com", 2),
            log_row("192.0.2.2", "example.com", 3),
            log_row("192.0.2.1", "news.example.com", 4),
        ]
        records = group_validation_logs(logs)
        self.assertEqual([(r.source_ip, r.header_from, r.count) for r in records], [
            ("192.0.2.1", "example.com", 2),
            ("192.0.2.2", "example.com", 1),
            ("192.0.2.1", "news.example.com", 1),
        ])

    def test_first_entry_represents_group(self):
        logs = [
            log_row("192.0.2.1", "example.com", 1, spf="PASS"),
            log_row("192.0.2.1", "example.com", 2, spf="FAIL", dmarc="FAIL", status="FAIL"),
        ]
        with self.assertLogs("mailsentry.aggregate", "WARNING"):
            records = group_validation_logs(logs)
        self.assertEqual(records[0].spf_result, "PASS")
        self.assertEqual(records[0].count, 2)


class TestReportXML(unittest.TestCase):

    def _report(self, **overrides):
        values = dict(
            id=1, report_id="secure_email_system_example_com_1709251200_1709337600",
            domain="example.com", org_name="Secure Email System", email="postmaster@example.org",
            begin_time=BEGIN, end_time=END, policy_domain="example.com", policy_p="quarantine",
            policy_sp="reject", policy_adkim="s", policy_aspf="r", policy_pct=50,
        )
        values.update(overrides)
        return DmarcReport(**values)

    def _records(self):
        return [
            DmarcReportRecord("192.0.2.1", "example.com", 3, "none", "example.com", "PASS", True,
                              "example.com", "PASS", "sel1", True, "PASS"),
            DmarcReportRecord("198.51.100.7", "example.com", 2, "quarantine", "spammer.example", "FAIL", False,
                              "example.com", "INVALID", "sel2", False, "FAIL"),
        ]

    def test_round_trip_counts(self):
        records = self._records()
        root = etree.fromstring(build_report_xml(self._report(), records))
        counts = [int(c) for c in root.xpath("/feedback/record/row/count/text()")]
        self.assertEqual(len(root.findall("record")), 2)
        self.assertEqual(sum(counts), 5)

    def test_metadata_and_policy(self):
        xml = build_report_xml(self._report(), self._records())
        self.assertTrue(xml.startswith(b"<?xml version='1.0' encoding='UTF-8'?>"))
        root = etree.fromstring(xml)
        self.assertEqual(root.findtext("report_metadata/org_name"), "Secure Email System")
        self.assertEqual(root.findtext("report_metadata/date_range/begin"), str(int(BEGIN.timestamp())))
        self.assertEqual(root.findtext("report_metadata/date_range/end"), str(int(END.timestamp())))
        published = root.find("policy_published")
        self.assertEqual([child.tag for child in published], ["domain", "adkim", "aspf", "p", "sp", "pct"])
        self.assertEqual(published.findtext("pct"), "50")

    def test_sp_omitted_when_unset(self):
        root = etree.fromstring(build_report_xml(self._report(policy_sp=None), []))
        self.assertIsNone(root.find("policy_published/sp"))
        self.assertEqual(root.findall("record"), [])

    def test_record_fields(self):
        root = etree.fromstring(build_report_xml(self._report(), self._records()))
        failing = root.findall("record")[1]
        self.assertEqual(failing.findtext("row/source_ip"), "198.51.100.7")
        self.assertEqual(failing.findtext("row/policy_evaluated/disposition"), "quarantine")
        self.assertEqual(failing.findtext("row/policy_evaluated/dkim"), "fail")
        self.assertEqual(failing.findtext("row/policy_evaluated/spf"), "fail")
        self.assertEqual(failing.findtext("identifiers/header_from"), "example.com")
        auth = failing.find("auth_results")
        self.assertEqual([child.tag for child in auth], ["dkim", "spf"])
        self.assertEqual(auth.findtext("dkim/result"), "permerror")
        self.assertEqual(auth.findtext("dkim/selector"), "sel2")
        self.assertEqual(auth.findtext("spf/domain"), "spammer.example")
        self.assertEqual(auth.findtext("spf/result"), "fail")

    def test_special_characters_escaped(self):
        xml = build_report_xml(self._report(org_name="A & B <Mail>"), [])
        self.assertEqual(etree.fromstring(xml).findtext("report_metadata/org_name"), "A & B <Mail>")

    def test_report_filename(self):
        self.assertEqual(
            report_filename(self._report()),
            "Secure_Email_System!example.com!1709251200!1709337600.xml.gz",
        )


class TestDmarcReporter(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.settings = Settings(
            db_path=os.path.join(self.tmpdir, "test.db"),
            dmarc_storage_path=os.path.join(self.tmpdir, "reports"),
            dmarc_org_name="Secure Email System",
            dmarc_contact_email="postmaster@example.org",
            dmarc_max_send_attempts=3,
        )
        self.resolver = FakeResolver(txt={"_dmarc.example.com": [DMARC_RECORD]})
        self.delivery = MagicMock()
        self.delivery.send_with_attachment.return_value = True
        self.reporter = DmarcReporter(self.settings, delivery=self.delivery, resolver=self.resolver)
        self.store = self.reporter.store

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _seed_logs(self):
        rows = [
            log_row("192.0.2.1", "example.com", 1),
            log_row("192.0.2.1", "example.com", 2),
            log_row("192.0.2.1", "example.com", 3),
            log_row("198.51.100.7", "example.com", 4, status="FAIL", spf="FAIL", dkim="FAIL",
                    dmarc="FAIL", spf_aligned=0, dkim_aligned=0, disposition="quarantine"),
            log_row("192.0.2.1", "news.example.com", 5),
            log_row("192.0.2.1", "example.net", 6),
            log_row("192.0.2.9", "example.com", 7, status="ERROR"),
            log_row("192.0.2.1", "example.com", 30),
        ]
        for row in rows:
            self.store.save_validation_log(row)

    def test_generate_report(self):
        self._seed_logs()
        report = self.reporter.generate_aggregate_report("Example.COM", BEGIN, END)
        self.assertEqual(report.report_id, "secure_email_system_example_com_1709251200_1709337600")
        self.assertEqual(report.status, ReportStatus.FILE_GENERATED)
        self.assertEqual((report.total_messages, report.compliant_messages, report.failed_messages), (5, 4, 1))
        self.assertAlmostEqual(report.compliance_rate, 80.0)
        self.assertEqual(report.policy_p, "quarantine")
        self.assertEqual(report.policy_sp, "reject")
        self.assertEqual(report.policy_adkim, "s")
        self.assertEqual(report.policy_pct, 50)
        self.assertEqual(report.rua, ["dmarc@example.com", "agg@third.example"])

        records = self.reporter.get_report_records(report)
        self.assertEqual(len(records), 3)
        self.assertEqual(sum(r.count for r in records), report.total_messages)

        self.assertTrue(report.report_path.endswith(report_filename(report)))
        self.assertEqual(os.path.getsize(report.report_path), report.report_size)
        with gzip.open(report.report_path, "rb") as f:
            root = etree.fromstring(f.read())
        self.assertEqual(len(root.findall("record")), 3)
        self.assertEqual(sum(int(c) for c in root.xpath("//record/row/count/text()")), 5)

    def test_generation_is_idempotent(self):
        self._seed_logs()
        first = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.store.save_validation_log(log_row("192.0.2.3", "example.com", 8))
        second = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.assertEqual(first.id, second.id)
        self.assertEqual(second.total_messages, first.total_messages)
        self.assertEqual(self.store.count_reports("example.com"), 1)

    def test_naive_window_treated_as_utc(self):
        report = self.reporter.generate_aggregate_report(
            "example.com", BEGIN.replace(tzinfo=None), END.replace(tzinfo=None)
        )
        self.assertEqual(report.begin_time, BEGIN)
        self.assertEqual(report.total_messages, 0)

    def test_sub_second_window_reuses_report(self):
        self._seed_logs()
        first = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        second = self.reporter.generate_aggregate_report(
            "example.com", BEGIN.replace(microsecond=500), END.replace(microsecond=999999)
        )
        self.assertEqual(second.id, first.id)
        self.assertEqual(second.begin_time, BEGIN)
        self.assertEqual(self.store.count_reports(), 1)

    def test_window_truncated_to_seconds(self):
        report = self.reporter.generate_aggregate_report(
            "example.com", BEGIN.replace(microsecond=250000), END.replace(microsecond=750000)
        )
        self.assertEqual((report.begin_time, report.end_time), (BEGIN, END))
        self.assertEqual(report.report_id, "secure_email_system_example_com_1709251200_1709337600")

    def test_failed_generation_leaves_no_partial_report(self):
        self._seed_logs()
        insert = AuthStore._insert

        def failing_insert(conn, table, values, verb="INSERT"):
            if table == "dmarc_report_records":
                raise sqlite3.OperationalError("disk I/O error")
            return insert(conn, table, values, verb)

        with patch.object(self.store, "_insert", side_effect=failing_insert):
            with self.assertRaises(sqlite3.OperationalError):
                self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.assertEqual(self.store.count_reports(), 0)

        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.assertEqual(report.total_messages, 5)
        self.assertEqual(len(self.reporter.get_report_records(report)), 3)
        self.assertEqual(report.status, ReportStatus.FILE_GENERATED)

    def test_disabled_returns_none(self):
        self.settings.dmarc_report_enabled = False
        self.assertIsNone(self.reporter.generate_aggregate_report("example.com", BEGIN, END))
        self.assertEqual(self.store.count_reports(), 0)

    def test_no_published_policy_uses_defaults(self):
        report = self.reporter.generate_aggregate_report("unpublished.example", BEGIN, END)
        self.assertEqual(report.policy_p, "none")
        self.assertEqual(report.rua, [])

    def test_send_report(self):
        self._seed_logs()
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        sent = self.reporter.send_dmarc_report(report.report_id)
        self.assertTrue(sent.is_sent)
        self.assertEqual(sent.status, ReportStatus.SENT)
        self.assertIsNotNone(sent.sent_at)
        self.assertEqual(self.delivery.send_with_attachment.call_count, 2)

        from_addr, to_addr, subject, body, path, content_type = self.delivery.send_with_attachment.call_args_list[0][0]
        self.assertEqual(from_addr, "postmaster@example.org")
        self.assertEqual(to_addr, "dmarc@example.com")
        self.assertEqual(
            subject,
            "Report Domain: example.com Submitter: Secure Email System "
            "Report-ID: secure_email_system_example_com_1709251200_1709337600",
        )
        self.assertIn("Compliance Rate: 80.00%", body)
        self.assertEqual(path, report.report_path)
        self.assertEqual(content_type, "application/gzip")

    def test_send_is_idempotent(self):
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.reporter.send_dmarc_report(report.report_id)
        self.reporter.send_dmarc_report(report.report_id)
        self.assertEqual(self.delivery.send_with_attachment.call_count, 2)

    def test_send_unknown_report(self):
        with self.assertRaises(KeyError):
            self.reporter.send_dmarc_report("missing")

    def test_send_failure_schedules_retry(self):
        self.delivery.send_with_attachment.return_value = False
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        before = datetime.now(timezone.utc)
        failed = self.reporter.send_dmarc_report(report.report_id)
        self.assertFalse(failed.is_sent)
        self.assertEqual(failed.status, ReportStatus.SEND_FAILED)
        self.assertEqual(failed.send_attempts, 1)
        self.assertGreaterEqual(failed.next_retry_at, before + timedelta(minutes=59))

    def test_delivery_exception_is_failure(self):
        self.delivery.send_with_attachment.side_effect = ConnectionRefusedError("relay down")
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        failed = self.reporter.send_dmarc_report(report.report_id)
        self.assertEqual(failed.status, ReportStatus.SEND_FAILED)
        self.assertIn("relay down", failed.error_message)

    def test_partial_delivery_counts_as_sent(self):
        self.delivery.send_with_attachment.side_effect = [True, False]
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        sent = self.reporter.send_dmarc_report(report.report_id)
        self.assertTrue(sent.is_sent)
        self.assertEqual(sent.recipient_uri, "dmarc@example.com")

    def test_no_rua_is_send_failure(self):
        report = self.reporter.generate_aggregate_report("unpublished.example", BEGIN, END)
        failed = self.reporter.send_dmarc_report(report.report_id)
        self.assertEqual(failed.status, ReportStatus.SEND_FAILED)
        self.delivery.send_with_attachment.assert_not_called()

    def test_missing_file_is_regenerated_before_send(self):
        self._seed_logs()
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        os.remove(report.report_path)
        sent = self.reporter.send_dmarc_report(report.report_id)
        self.assertTrue(sent.is_sent)
        self.assertTrue(os.path.exists(sent.report_path))

    def test_retry_and_abandon(self):
        self.delivery.send_with_attachment.return_value = False
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.reporter.send_dmarc_report(report.report_id)

        # Not due yet
        self.assertEqual(self.reporter.retry_failed_reports(), [])

        for expected_attempts in (2, 3):
            self.store.update_report(report.id, next_retry_at=datetime.now(timezone.utc) - timedelta(minutes=1))
            retried = self.reporter.retry_failed_reports()
            self.assertEqual(len(retried), 1)
            self.assertEqual(retried[0].send_attempts, expected_attempts)

        self.assertEqual(retried[0].status, ReportStatus.ABANDONED)
        self.store.update_report(report.id, next_retry_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        self.assertEqual(self.reporter.retry_failed_reports(), [])

    def test_retry_succeeds(self):
        self.delivery.send_with_attachment.return_value = False
        report = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        self.reporter.send_dmarc_report(report.report_id)
        self.delivery.send_with_attachment.return_value = True
        self.store.update_report(report.id, next_retry_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        retried = self.reporter.retry_failed_reports()
        self.assertEqual(retried[0].status, ReportStatus.SENT)

    def test_periodic_generation_isolates_failures(self):
        original = self.reporter.generate_aggregate_report

        def flaky(domain, start, end):
            if domain == "broken.example":
                raise RuntimeError("database unavailable")
            return original(domain, start, end)

        with patch.object(self.reporter, "generate_aggregate_report", side_effect=flaky):
            reports = self.reporter.generate_periodic_reports(["broken.example", "example.com"])
        self.assertEqual([r.domain for r in reports], ["example.com"])
        window = reports[0].end_time - reports[0].begin_time
        self.assertEqual(window, timedelta(hours=self.settings.dmarc_generation_interval_hours))

    def test_periodic_sends_reports_with_messages(self):
        now = datetime.now(timezone.utc)
        row = log_row("192.0.2.1", "example.com")
        row["validated_at"] = now - timedelta(hours=2)
        self.store.save_validation_log(row)
        reports = self.reporter.generate_periodic_reports(["example.com"])
        self.assertTrue(reports[0].is_sent)

    def test_cleanup_expired_reports(self):
        old = self.reporter.generate_aggregate_report("example.com", BEGIN, END)
        fresh = self.reporter.generate_aggregate_report("example.com", END, END + timedelta(days=1))
        self.store.update_report(old.id, created_at=to_db_time(datetime.now(timezone.utc) - timedelta(days=120)))

        removed = self.reporter.cleanup_expired_reports()
        self.assertEqual(removed, 1)
        self.assertIsNone(self.reporter.get_report(old.report_id))
        self.assertFalse(os.path.exists(old.report_path))
        self.assertIsNotNone(self.reporter.get_report(fresh.report_id))


if __name__ == "__main__":
    unittest.main()
