# tests/test_cli.py

"""Tests for the mailsentry command-line entry point."""

import io
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

import mailsentry
from checks.store import AuthStore


class TestParser(unittest.TestCase):

    def test_validate_arguments(self):
        args = mailsentry.build_parser().parse_args(
            ["validate", "a.eml", "b.eml", "--ip", "192.0.2.1", "--strict", "-o", "json"]
        )
        self.assertEqual(args.files, ["a.eml", "b.eml"])
        self.assertTrue(args.strict)
        self.assertEqual(args.o, "json")

    def test_command_required(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                mailsentry.build_parser().parse_args([])

    def test_parse_time(self):
        self.assertEqual(mailsentry.parse_time("2024-03-01T00:00:00"), datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(mailsentry.parse_time("2024-03-01T02:00:00+02:00").astimezone(timezone.utc),
                         datetime(2024, 3, 1, tzinfo=timezone.utc))


class TestMain(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, "cli.db")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _run(self, *argv):
        with patch("sys.argv", ["mailsentry.py", "--db", self.db_path, *argv]), \
                patch("sys.stdout", new_callable=io.StringIO) as out:
            mailsentry.main()
        return out.getvalue()

    def test_cleanup(self):
        self.assertIn("Removed 0 expired reports", self._run("cleanup", "--days", "30"))
        self.assertTrue(os.path.exists(self.db_path))

    def test_retry_with_nothing_pending(self):
        self.assertIn("Retried 0 reports", self._run("retry"))

    def test_dnsbl_stats_only(self):
        output = self._run("dnsbl", "--stats")
        self.assertIn("lists active", output)
        self.assertTrue(AuthStore(self.db_path).get_blacklists())


if __name__ == "__main__":
    unittest.main()
