# checks/store.py

"""
SQLite-backed persistence for MailSentry.

Holds validation logs, DMARC aggregate reports and their records, the DNSBL
zone table with its running counters, and DNSBL check logs.
Default location: ~/.mailsentry/mailsentry.db

Every call opens its own connection, so one store can be shared by worker
threads. Counters are bumped with single UPDATE statements and report
creation relies on a unique (domain, begin_time, end_time) index.
"""

import logging
import os
import sqlite3
from datetime import datetime, timezone

from .config import DEFAULT_DB_PATH

logger = logging.getLogger("mailsentry.store")

# Schema version for future migrations
SCHEMA_VERSION = 1

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def utcnow():
    return datetime.now(timezone.utc)


def to_db_time(value):
    """Serialise a datetime as a sortable UTC string. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TIMESTAMP_FORMAT)


def from_db_time(value):
    if not value:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class AuthStore:
    """Persistence collaborator for validation, reporting and DNSBL state."""

    def __init__(self, db_path=None):
        self.db_path = db_path or DEFAULT_DB_PATH
        self._ensure_dir()
        self._init_db()

    def _ensure_dir(self):
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            logger.debug("Created data directory: %s", db_dir)

    def _get_conn(self):
        """Get a new database connection (thread-safe pattern)."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self):
        """Initialize the database schema."""
        conn = self._get_conn()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );

                CREATE TABLE IF NOT EXISTS validation_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT,
                    from_address TEXT,
                    header_from TEXT,
                    sender_ip TEXT,
                    validation_status TEXT NOT NULL,
                    spf_status TEXT,
                    spf_domain TEXT,
                    spf_record TEXT,
                    dkim_status TEXT,
                    dkim_domain TEXT,
                    dkim_selector TEXT,
                    dmarc_status TEXT,
                    dmarc_policy TEXT,
                    dmarc_disposition TEXT,
                    spf_aligned INTEGER DEFAULT 0,
                    dkim_aligned INTEGER DEFAULT 0,
                    error_message TEXT,
                    details TEXT,
                    processing_time_ms INTEGER,
                    validated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_validation_logs_validated_at
                    ON validation_logs(validated_at);

                CREATE TABLE IF NOT EXISTS dmarc_reports (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    report_id TEXT NOT NULL UNIQUE,
                    domain TEXT NOT NULL,
                    org_name TEXT NOT NULL,
                    email TEXT,
                    begin_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    policy_domain TEXT,
                    policy_p TEXT DEFAULT 'none',
                    policy_sp TEXT,
                    policy_adkim TEXT DEFAULT 'r',
                    policy_aspf TEXT DEFAULT 'r',
                    policy_pct INTEGER DEFAULT 100,
                    rua TEXT,
                    total_messages INTEGER DEFAULT 0,
                    compliant_messages INTEGER DEFAULT 0,
                    failed_messages INTEGER DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'CREATED',
                    is_sent INTEGER DEFAULT 0,
                    sent_at TEXT,
                    recipient_uri TEXT,
                    send_attempts INTEGER DEFAULT 0,
                    next_retry_at TEXT,
                    report_path TEXT,
                    report_size INTEGER DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (domain, begin_time, end_time)
                );

                CREATE TABLE IF NOT EXISTS dmarc_report_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    report_pk INTEGER NOT NULL
                        REFERENCES dmarc_reports(id) ON DELETE CASCADE,
                    source_ip TEXT NOT NULL,
                    header_from TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    disposition TEXT,
                    spf_domain TEXT,
                    spf_result TEXT,
                    spf_aligned INTEGER DEFAULT 0,
                    dkim_domain TEXT,
                    dkim_result TEXT,
                    dkim_selector TEXT,
                    dkim_aligned INTEGER DEFAULT 0,
                    dmarc_result TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_report_records_report
                    ON dmarc_report_records(report_pk);

                CREATE TABLE IF NOT EXISTS dns_blacklists (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    hostname TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    description TEXT,
                    weight REAL NOT NULL DEFAULT 1.0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    query_timeout_ms INTEGER NOT NULL DEFAULT 5000,
                    query_count INTEGER NOT NULL DEFAULT 0,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    last_query_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS dnsbl_check_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT,
                    ip_address TEXT NOT NULL,
                    check_status TEXT NOT NULL,
                    hit_count INTEGER DEFAULT 0,
                    total_weight REAL DEFAULT 0,
                    risk_level TEXT,
                    blacklists_checked INTEGER DEFAULT 0,
                    check_details TEXT,
                    processing_time_ms INTEGER,
                    checked_at TEXT NOT NULL
                );
            """)

            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES (?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )
            conn.commit()
            logger.debug("Database initialized at %s", self.db_path)
        finally:
            conn.close()

    @staticmethod
    def _insert(conn, table, values, verb="INSERT"):
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        return conn.execute(
            f"{verb} INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )

    # --- Validation logs ---

    def save_validation_log(self, entry):
        """Insert a validation log row and return its id."""
        entry = dict(entry)
        entry["validated_at"] = to_db_time(entry.get("validated_at") or utcnow())
        conn = self._get_conn()
        try:
            cursor = self._insert(conn, "validation_logs", entry)
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def get_validation_logs(self, start, end, statuses=("PASS", "FAIL")):
        """Completed validation logs with ``start <= validated_at < end``, oldest first."""
        placeholders = ", ".join("?" for _ in statuses)
        conn = self._get_conn()
        try:
            rows = conn.execute(
                f"""SELECT * FROM validation_logs
                    WHERE validated_at >= ? AND validated_at < ?
                      AND validation_status IN ({placeholders})
                    ORDER BY validated_at ASC, id ASC""",
                (to_db_time(start), to_db_time(end), *statuses),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # --- DMARC reports ---

    def create_report_if_absent(self, values, records=()):
        """Insert a report and its records unless the (domain, begin, end) window exists.

        The report row, its totals and its records are written in one
        transaction, so a failure leaves no partial report behind.
        Returns ``(row, created)``; ``row`` is the stored report either way.
        """
        values = dict(values)
        for key in ("begin_time", "end_time"):
            values[key] = to_db_time(values[key])
        values["created_at"] = to_db_time(values.get("created_at") or utcnow())
        conn = self._get_conn()
        try:
            try:
                cursor = self._insert(conn, "dmarc_reports", values, verb="INSERT OR IGNORE")
                created = cursor.rowcount == 1
                if created:
                    report_pk = cursor.lastrowid
                    for record in records:
                        self._insert(conn, "dmarc_report_records", dict(record, report_pk=report_pk))
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

            row = conn.execute(
                """SELECT * FROM dmarc_reports
                   WHERE domain = ? AND begin_time = ? AND end_time = ?""",
                (values["domain"], values["begin_time"], values["end_time"]),
            ).fetchone()
            if row is None:
                # Ignored on report_id rather than on the window
                row = conn.execute(
                    "SELECT * FROM dmarc_reports WHERE report_id = ?", (values["report_id"],)
                ).fetchone()
            if created:
                logger.debug("Created report %s with %d records", values["report_id"], len(records))
            return dict(row), created
        finally:
            conn.close()

    def get_report(self, report_pk):
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM dmarc_reports WHERE id = ?", (report_pk,)).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def get_report_by_report_id(self, report_id):
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM dmarc_reports WHERE report_id = ?", (report_id,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def count_reports(self, domain=None):
        conn = self._get_conn()
        try:
            if domain:
                row = conn.execute(
                    "SELECT COUNT(*) FROM dmarc_reports WHERE domain = ?", (domain,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM dmarc_reports").fetchone()
            return row[0]
        finally:
            conn.close()

    def update_report(self, report_pk, **fields):
        for key in ("sent_at", "next_retry_at"):
            if key in fields and isinstance(fields[key], datetime):
                fields[key] = to_db_time(fields[key])
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self._get_conn()
        try:
            conn.execute(
                f"UPDATE dmarc_reports SET {assignments} WHERE id = ?",
                (*fields.values(), report_pk),
            )
            conn.commit()
        finally:
            conn.close()

    def record_send_failure(self, report_pk, error_message, next_retry_at, max_attempts):
        """Bump the attempt counter; the report is abandoned at ``max_attempts``."""
        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE dmarc_reports
                   SET send_attempts = send_attempts + 1,
                       error_message = ?,
                       next_retry_at = ?,
                       status = CASE WHEN send_attempts + 1 >= ? THEN 'ABANDONED'
                                     ELSE 'SEND_FAILED' END
                   WHERE id = ?""",
                (error_message, to_db_time(next_retry_at), max_attempts, report_pk),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM dmarc_reports WHERE id = ?", (report_pk,)).fetchone()
            return dict(row)
        finally:
            conn.close()

    def find_reports_needing_retry(self, now, max_attempts):
        conn = self._get_conn()
        try:
            rows = conn.execute(
                """SELECT * FROM dmarc_reports
                   WHERE is_sent = 0 AND status = 'SEND_FAILED' AND send_attempts < ?
                     AND (next_retry_at IS NULL OR next_retry_at <= ?)
                   ORDER BY id ASC""",
                (max_attempts, to_db_time(now)),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def find_reports_created_before(self, cutoff):
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM dmarc_reports WHERE created_at < ? ORDER BY id ASC",
                (to_db_time(cutoff),),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def delete_report(self, report_pk):
        """Delete a report; its records go with it (ON DELETE CASCADE)."""
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM dmarc_reports WHERE id = ?", (report_pk,))
            conn.commit()
        finally:
            conn.close()

    def get_report_records(self, report_pk):
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM dmarc_report_records WHERE report_pk = ? ORDER BY id ASC",
                (report_pk,),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # --- DNSBL zones ---

    def seed_blacklist(self, values):
        """Insert a zone unless its hostname is already known. Returns True if inserted."""
        values = dict(values)
        values["created_at"] = to_db_time(utcnow())
        conn = self._get_conn()
        try:
            cursor = self._insert(conn, "dns_blacklists", values, verb="INSERT OR IGNORE")
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_blacklists(self, active_only=False):
        """Zones ordered by descending weight."""
        conn = self._get_conn()
        try:
            query = "SELECT * FROM dns_blacklists"
            if active_only:
                query += " WHERE is_active = 1"
            rows = conn.execute(query + " ORDER BY weight DESC, id ASC").fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_blacklist(self, hostname):
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT * FROM dns_blacklists WHERE hostname = ?", (hostname,)
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def set_blacklist_active(self, hostname, active):
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE dns_blacklists SET is_active = ? WHERE hostname = ?",
                (1 if active else 0, hostname),
            )
            conn.commit()
        finally:
            conn.close()

    def increment_blacklist_counters(self, blacklist_id, hit, queried_at=None):
        """Atomic per-row bump of query_count (and hit_count on a hit)."""
        conn = self._get_conn()
        try:
            conn.execute(
                """UPDATE dns_blacklists
                   SET query_count = query_count + 1,
                       hit_count = hit_count + ?,
                       last_query_at = ?
                   WHERE id = ?""",
                (1 if hit else 0, to_db_time(queried_at or utcnow()), blacklist_id),
            )
            conn.commit()
        finally:
            conn.close()

    def blacklist_statistics(self):
        conn = self._get_conn()
        try:
            row = conn.execute("""
                SELECT
                    COUNT(*) AS total_blacklists,
                    COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0) AS active_blacklists,
                    COALESCE(SUM(query_count), 0) AS total_queries,
                    COALESCE(SUM(hit_count), 0) AS total_hits
                FROM dns_blacklists
            """).fetchone()
            return dict(row)
        finally:
            conn.close()

    def save_dnsbl_check_log(self, entry):
        entry = dict(entry)
        entry["checked_at"] = to_db_time(entry.get("checked_at") or utcnow())
        conn = self._get_conn()
        try:
            cursor = self._insert(conn, "dnsbl_check_logs", entry)
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def get_dnsbl_check_logs(self, ip_address=None, limit=50):
        conn = self._get_conn()
        try:
            if ip_address:
                rows = conn.execute(
                    """SELECT * FROM dnsbl_check_logs WHERE ip_address = ?
                       ORDER BY checked_at DESC LIMIT ?""",
                    (ip_address, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM dnsbl_check_logs ORDER BY checked_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()
