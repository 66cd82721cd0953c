# -*- coding: utf-8 -*-

from __future__ import annotations

import sqlite3
import threading
from typing import Optional

from dmarcworker import parsed_smtp_tls_reports_to_csv_rows
from dmarcworker.log import logger
from dmarcworker.types import AggregateReport, SMTPTLSReport

SCHEMA = """
CREATE TABLE IF NOT EXISTS dmarc_reports (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  report_id TEXT UNIQUE NOT NULL,
  org_name TEXT NOT NULL,
  domain TEXT NOT NULL,
  begin_date INTEGER NOT NULL,
  end_date INTEGER NOT NULL,
  dkim_pass INTEGER DEFAULT 0,
  dkim_fail INTEGER DEFAULT 0,
  dkim_temperror INTEGER DEFAULT 0,
  spf_pass INTEGER DEFAULT 0,
  spf_fail INTEGER DEFAULT 0,
  spf_temperror INTEGER DEFAULT 0,
  policy_p TEXT NOT NULL,
  raw_xml TEXT,
  created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS tls_reports (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  report_id TEXT NOT NULL,
  org_name TEXT NOT NULL,
  policy_domain TEXT NOT NULL,
  policy_type TEXT NOT NULL,
  total_success INTEGER DEFAULT 0,
  total_failures INTEGER DEFAULT 0,
  failure_details TEXT,
  begin_date INTEGER NOT NULL,
  end_date INTEGER NOT NULL,
  created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_dmarc_domain ON dmarc_reports(domain);
CREATE INDEX IF NOT EXISTS idx_dmarc_begin_date ON dmarc_reports(begin_date);
CREATE INDEX IF NOT EXISTS idx_dmarc_org_name ON dmarc_reports(org_name);
CREATE INDEX IF NOT EXISTS idx_tls_policy_domain ON tls_reports(policy_domain);
CREATE INDEX IF NOT EXISTS idx_tls_begin_date ON tls_reports(begin_date);
"""

AGGREGATE_COLUMNS = (
    "report_id",
    "org_name",
    "domain",
    "begin_date",
    "end_date",
    "dkim_pass",
    "dkim_fail",
    "dkim_temperror",
    "spf_pass",
    "spf_fail",
    "spf_temperror",
    "policy_p",
    "raw_xml",
)

TLS_COLUMNS = (
    "report_id",
    "org_name",
    "policy_domain",
    "policy_type",
    "total_success",
    "total_failures",
    "failure_details",
    "begin_date",
    "end_date",
)


class DatabaseError(RuntimeError):
    """Raised when the report database cannot be used"""


class SQLiteReportStore(object):
    """Saves parsed reports to a SQLite database"""

    def __init__(self, path: str):
        """
        Opens the database and creates the report tables if needed

        Args:
            path (str): Path to the SQLite database file
        """
        self.path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise DatabaseError(
                "Unable to open report database {0}: {1}".format(path, e)
            ) from e

    def save_aggregate_report(self, report: AggregateReport) -> bool:
        """
        Saves an aggregate report, ignoring reports already saved

        Returns:
            bool: ``True`` if the report was new
        """
        sql = (
            "INSERT INTO dmarc_reports ({0}) VALUES ({1}) "
            "ON CONFLICT (report_id) DO NOTHING".format(
                ", ".join(AGGREGATE_COLUMNS), ", ".join("?" * len(AGGREGATE_COLUMNS))
            )
        )
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        sql, tuple(report[column] for column in AGGREGATE_COLUMNS)
                    )
            except sqlite3.Error as e:
                raise DatabaseError("Aggregate report insert failed: {0}".format(e))
        if cursor.rowcount == 0:
            logger.debug(
                "Aggregate report {0} was already saved".format(report["report_id"])
            )
            return False
        return True

    def save_smtp_tls_report(self, report: SMTPTLSReport) -> int:
        """
        Saves one row per policy of an SMTP TLS report. A row that cannot be
        saved is logged and skipped.

        Returns:
            int: The number of rows saved
        """
        sql = "INSERT INTO tls_reports ({0}) VALUES ({1})".format(
            ", ".join(TLS_COLUMNS), ", ".join("?" * len(TLS_COLUMNS))
        )
        saved = 0
        for row in parsed_smtp_tls_reports_to_csv_rows(report):
            with self._lock:
                try:
                    with self._conn:
                        self._conn.execute(
                            sql, tuple(row[column] for column in TLS_COLUMNS)
                        )
                    saved += 1
                except sqlite3.Error as e:
                    logger.error(
                        "SMTP TLS report {0} insert failed for policy domain "
                        "{1}: {2}".format(row["report_id"], row["policy_domain"], e)
                    )
        return saved

    def get_aggregate_report(self, report_id: str) -> Optional[AggregateReport]:
        with self._lock:
            row = self._conn.execute(
                "SELECT {0} FROM dmarc_reports WHERE report_id = ?".format(
                    ", ".join(AGGREGATE_COLUMNS)
                ),
                (report_id,),
            ).fetchone()
        if row is None:
            return None
        return {column: row[column] for column in AGGREGATE_COLUMNS}

    def get_smtp_tls_rows(self, report_id: str) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT {0} FROM tls_reports WHERE report_id = ? ORDER BY id".format(
                    ", ".join(TLS_COLUMNS)
                ),
                (report_id,),
            ).fetchall()
        return [{column: row[column] for column in TLS_COLUMNS} for row in rows]

    def close(self):
        with self._lock:
            self._conn.close()
