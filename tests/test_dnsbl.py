# tests/test_dnsbl.py

"""Tests for the DNSBL checker."""

import os
import shutil
import tempfile
import threading
import unittest
from unittest.mock import patch

from checks.config import Settings
from checks.dns import SERVFAIL, TIMEOUT
from checks.dnsbl import (
    BlacklistHit, CheckStatus, DNSBLChecker, RiskLevel, interpret_return_code, reverse_ip, risk_level,
)
from checks.store import AuthStore

from fake_dns import FakeResolver

LISTS = {
    "zen.spamhaus.org": 5.0,
    "b.barracudacentral.org": 3.0,
    "dnsbl.sorbs.net": 3.0,
    "psbl.surriel.com": 2.0,
    "ubl.unsubscore.com": 2.0,
}


def hit(weight):
    return BlacklistHit("List", "list.example", "127.0.0.2", "listed", weight)


class TestRiskLevel(unittest.TestCase):

    def test_no_hits_is_clean(self):
        self.assertEqual(risk_level([]), RiskLevel.CLEAN)

    def test_single_low_weight_hit(self):
        self.assertEqual(risk_level([hit(2.0)]), RiskLevel.LOW)

    def test_total_weight_six_is_medium(self):
        self.assertEqual(risk_level([hit(3.0), hit(3.0)]), RiskLevel.MEDIUM)

    def test_three_hits_is_medium(self):
        self.assertEqual(risk_level([hit(1.0), hit(1.0), hit(1.0)]), RiskLevel.MEDIUM)

    def test_high_threat_list_is_high(self):
        self.assertEqual(risk_level([hit(5.0)]), RiskLevel.HIGH)

    def test_total_weight_ten_is_high(self):
        self.assertEqual(risk_level([hit(4.0), hit(3.0), hit(3.0)]), RiskLevel.HIGH)

    def test_five_hits_is_high(self):
        self.assertEqual(risk_level([hit(0.5)] * 5), RiskLevel.HIGH)


class TestHelpers(unittest.TestCase):

    def test_reverse_ip(self):
        self.assertEqual(reverse_ip("192.0.2.10"), "10.2.0.192")

    def test_interpret_codes(self):
        self.assertIn("SBL", interpret_return_code("zen.spamhaus.org", "127.0.0.2"))
        self.assertIn("SpamCop", interpret_return_code("bl.spamcop.net", "127.0.0.2"))
        self.assertIn("Dynamic", interpret_return_code("dnsbl.sorbs.net", "127.0.0.10"))
        self.assertIn("127.0.0.99", interpret_return_code("psbl.surriel.com", "127.0.0.99"))


class TestDNSBLChecker(unittest.TestCase):

    IP = "192.0.2.10"
    REVERSED = "10.2.0.192"

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.settings = Settings(
            db_path=os.path.join(self.tmpdir, "test.db"),
            dnsbl_default_lists=dict(LISTS),
            dnsbl_batch_delay=0,
        )
        self.store = AuthStore(self.settings.db_path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _checker(self, a=None, errors=None, resolver=None):
        resolver = resolver or FakeResolver(a=a, errors=errors)
        checker = DNSBLChecker(self.settings, resolver, self.store)
        checker.initialize_default_blacklists()
        return checker, resolver

    def _name(self, zone):
        return f"{self.REVERSED}.{zone}"

    def test_initialize_is_idempotent(self):
        checker, _ = self._checker()
        self.assertEqual(checker.initialize_default_blacklists(), 0)
        entries = self.store.get_blacklists()
        self.assertEqual(len(entries), 5)
        spamhaus = self.store.get_blacklist("zen.spamhaus.org")
        self.assertEqual(spamhaus["display_name"], "Spamhaus")
        self.assertEqual(spamhaus["weight"], 5.0)

    def test_default_weight_for_bare_zone(self):
        self.settings.dnsbl_default_lists = {"bl.spamcop.net": None}
        self._checker()
        self.assertEqual(self.store.get_blacklist("bl.spamcop.net")["weight"], 5.0)

    def test_invalid_ip(self):
        checker, resolver = self._checker()
        for bad in ("999.1.1.1", "1.2.3", "2001:db8::1", "abc"):
            result = checker.check_ip_address(bad)
            self.assertEqual(result.status, CheckStatus.INVALID)
        self.assertEqual(resolver.queries, [])

    def test_disabled(self):
        self.settings.dnsbl_enabled = False
        checker, resolver = self._checker()
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.DISABLED)
        self.assertEqual(resolver.queries, [])

    def test_clean(self):
        checker, resolver = self._checker()
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.CLEAN)
        self.assertEqual(result.risk_level, RiskLevel.CLEAN)
        self.assertEqual(result.checked_lists, 5)
        self.assertEqual(len(resolver.queries), 5)
        self.assertIn(("A", self._name("zen.spamhaus.org")), resolver.queries)

    def test_query_results_in_descending_weight_order(self):
        checker, _ = self._checker()
        result = checker.check_ip_address(self.IP)
        weights = [LISTS[q.hostname] for q in result.query_results]
        self.assertEqual(weights, sorted(weights, reverse=True))

    def test_single_low_weight_hit(self):
        checker, _ = self._checker(a={self._name("psbl.surriel.com"): ["127.0.0.2"]})
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.LISTED)
        self.assertEqual(result.risk_level, RiskLevel.LOW)
        self.assertEqual(result.hit_count, 1)
        self.assertEqual(result.hits[0].hostname, "psbl.surriel.com")
        self.assertEqual(result.hits[0].return_code, "127.0.0.2")

    def test_medium_weight_hits(self):
        checker, _ = self._checker(a={
            self._name("b.barracudacentral.org"): ["127.0.0.2"],
            self._name("dnsbl.sorbs.net"): ["127.0.0.10"],
        })
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.total_weight, 6.0)
        self.assertEqual(result.risk_level, RiskLevel.MEDIUM)
        self.assertEqual(result.hits[1].description, "Dynamic IP address space")

    def test_high_threat_hit(self):
        checker, _ = self._checker(a={self._name("zen.spamhaus.org"): ["127.0.0.4"]})
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.risk_level, RiskLevel.HIGH)
        self.assertEqual(result.total_weight, 5.0)

    def test_one_list_timing_out_does_not_abort(self):
        checker, _ = self._checker(
            a={self._name("zen.spamhaus.org"): ["127.0.0.2"]},
            errors={("A", self._name("b.barracudacentral.org")): TIMEOUT},
        )
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.LISTED)
        self.assertEqual(len(result.query_results), 5)
        errored = [q for q in result.query_results if q.error]
        self.assertEqual([q.hostname for q in errored], ["b.barracudacentral.org"])
        answered = [q for q in result.query_results if not q.error]
        self.assertEqual(len(answered), 4)

    def test_all_lists_failing_is_error(self):
        errors = {("A", self._name(zone)): SERVFAIL for zone in LISTS}
        checker, _ = self._checker(errors=errors)
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.ERROR)

    def test_spamhaus_refusal_is_query_error(self):
        checker, _ = self._checker(a={self._name("zen.spamhaus.org"): ["127.255.255.254"]})
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.status, CheckStatus.CLEAN)
        spamhaus = result.query_results[0]
        self.assertTrue(spamhaus.error)
        self.assertFalse(spamhaus.listed)

    def test_counters_updated(self):
        checker, _ = self._checker(a={self._name("zen.spamhaus.org"): ["127.0.0.2"]})
        checker.check_ip_address(self.IP)
        checker.check_ip_address(self.IP)
        spamhaus = self.store.get_blacklist("zen.spamhaus.org")
        sorbs = self.store.get_blacklist("dnsbl.sorbs.net")
        self.assertEqual((spamhaus["query_count"], spamhaus["hit_count"]), (2, 2))
        self.assertEqual((sorbs["query_count"], sorbs["hit_count"]), (2, 0))
        stats = checker.get_statistics()
        self.assertEqual(stats["total_queries"], 10)
        self.assertEqual(stats["total_hits"], 2)
        self.assertAlmostEqual(stats["hit_rate"], 20.0)

    def test_inactive_list_skipped(self):
        checker, resolver = self._checker()
        self.store.set_blacklist_active("dnsbl.sorbs.net", False)
        result = checker.check_ip_address(self.IP)
        self.assertEqual(result.checked_lists, 4)
        self.assertNotIn(("A", self._name("dnsbl.sorbs.net")), resolver.queries)

    def test_overall_timeout_abandons_without_counting(self):
        release = threading.Event()
        slow_name = self._name("ubl.unsubscore.com")

        class SlowResolver(FakeResolver):
            def lookup_a(self, name, timeout=None):
                if name == slow_name:
                    release.wait(5)
                return super().lookup_a(name, timeout)

        checker, _ = self._checker(resolver=SlowResolver())
        try:
            result = checker.check_ip_address(self.IP, timeout=0.5)
        finally:
            release.set()
        slow = [q for q in result.query_results if q.hostname == "ubl.unsubscore.com"][0]
        self.assertTrue(slow.error)
        self.assertEqual(self.store.get_blacklist("ubl.unsubscore.com")["query_count"], 0)
        self.assertEqual(self.store.get_blacklist("zen.spamhaus.org")["query_count"], 1)

    def test_check_log_written_for_message(self):
        checker, _ = self._checker(a={self._name("zen.spamhaus.org"): ["127.0.0.2"]})
        checker.check_ip_address(self.IP, message="<abc@example.com>")
        logs = self.store.get_dnsbl_check_logs(self.IP)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["message_id"], "<abc@example.com>")
        self.assertEqual(logs[0]["risk_level"], "HIGH")
        self.assertIn("Spamhaus", logs[0]["check_details"])

    def test_no_check_log_without_message(self):
        checker, _ = self._checker()
        checker.check_ip_address(self.IP)
        self.assertEqual(self.store.get_dnsbl_check_logs(), [])

    def test_batch_isolates_failures(self):
        checker, _ = self._checker()
        original = checker.check_ip_address

        def flaky(ip, message=None, timeout=None):
            if ip == "198.51.100.1":
                raise RuntimeError("resolver crashed")
            return original(ip, message, timeout)

        with patch.object(checker, "check_ip_address", side_effect=flaky):
            results = checker.batch_check_ips([self.IP, "198.51.100.1", "bad-ip"])
        self.assertEqual(
            [r.status for r in results], [CheckStatus.CLEAN, CheckStatus.ERROR, CheckStatus.INVALID]
        )
        self.assertEqual(results[1].error_message, "resolver crashed")

    def test_to_dict(self):
        checker, _ = self._checker(a={self._name("psbl.surriel.com"): ["127.0.0.2"]})
        d = checker.check_ip_address(self.IP).to_dict()
        self.assertEqual(d["status"], "LISTED")
        self.assertEqual(d["risk_level"], "LOW")
        self.assertEqual(len(d["query_results"]), 5)


if __name__ == "__main__":
    unittest.main()
