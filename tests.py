import gzip
import json
import os
import tempfile
import threading
import time
import unittest
import zipfile
from argparse import Namespace
from base64 import b64encode
from glob import glob
from io import BytesIO, StringIO
from unittest import mock

import requests

import dmarcworker
import dmarcworker.cli
import dmarcworker.utils
from dmarcworker.database import DatabaseError, SQLiteReportStore
from dmarcworker.ingest import get_dmarc_result, ingest_email
from dmarcworker.queue import QueueRunner, ReplyQueue
from dmarcworker.reply import (
    ReplyError,
    ReplySender,
    SMTPReplySender,
    build_reply_message,
)
from dmarcworker.report_store import ReportStore
from dmarcworker.storage import (
    MemoryQueueStorage,
    SQLiteQueueStorage,
    StorageError,
)
from dmarcworker.webhook import WebhookClient

NOW = 1700000000000
MINUTE = 60 * 1000

GOOGLE_SAMPLE = "samples/aggregate/google.com!example.com!1700006400!1700092799.xml"
FLAT_SAMPLE = (
    "samples/aggregate/mail.example.org!example.com!1700006400!1700092799.xml"
)
TLS_SAMPLE = "samples/smtp_tls/google.com!example.com!2024-01-01.json"
TLS_FLAT_SAMPLE = "samples/smtp_tls/mail.example.org!example.com!2024-01-02.json"
AGGREGATE_EMAIL = "samples/email/aggregate-report.eml"
TLS_EMAIL = "samples/email/smtp-tls-report.eml"

MINIMAL_FEEDBACK = """<feedback>
  <report_metadata>
    <org_name>Acme</org_name>
    <report_id>acme-1</report_id>
    <date_range><begin>1700000000</begin><end>1700086399</end></date_range>
  </report_metadata>
  <policy_published><domain>example.com</domain><p>reject</p></policy_published>
  {records}
</feedback>"""


def read_sample(path, mode="rb"):
    with open(path, mode) as sample_file:
        return sample_file.read()


def make_message(report_id="rpt-1", send_at=NOW):
    return {
        "message_id": "<test@example.com>",
        "reply_to": "sender@example.com",
        "report_id": report_id,
        "subject": "DMARC Report",
        "send_at": send_at,
    }


class FakeClock(object):
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeSender(ReplySender):
    def __init__(self, failing=(), always_fail=False, delay=None):
        self.failing = set(failing)
        self.always_fail = always_fail
        self.delay = delay
        self.attempts = []
        self.sent = []

    def send(self, message):
        self.attempts.append(message["report_id"])
        if self.delay is not None:
            time.sleep(self.delay)
        if self.always_fail or message["report_id"] in self.failing:
            raise ReplyError("mail server unavailable")
        self.sent.append(message["report_id"])


class BlockingSender(ReplySender):
    """Holds every send until released"""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.sent = []

    def send(self, message):
        self.started.set()
        self.release.wait(5)
        self.sent.append(message["report_id"])


def timer_covers_jobs(queue):
    """Returns True if the timer fires at or before every pending job"""
    timer = queue.next_wake()
    jobs = queue.pending_jobs()
    if len(jobs) == 0:
        return timer is None
    return timer is not None and all(
        timer <= job["message"]["send_at"] for job in jobs
    )


class BrokenQueueStorage(MemoryQueueStorage):
    def list(self, prefix):
        raise StorageError("disk I/O error")


class Test(unittest.TestCase):
    def testBase64Decoding(self):
        """Test base64 decoding"""
        # Example from Wikipedia Base64 article
        b64_str = "YW55IGNhcm5hbCBwbGVhcw"
        decoded_str = dmarcworker.utils.decode_base64(b64_str)
        assert decoded_str == b"any carnal pleas"

    def testHumanTimestamps(self):
        """Test ISO 8601 timestamp conversion"""
        convert = dmarcworker.utils.human_timestamp_to_unix_timestamp
        self.assertEqual(convert("2024-01-01T00:00:00Z"), 1704067200)
        self.assertEqual(convert("2024-01-01T23:59:59Z"), 1704153599)
        self.assertIsNone(convert("not a date"))
        self.assertIsNone(convert(None))

    def testExtractReportBytes(self):
        """Test extract report function for bytes string input"""
        data = read_sample(GOOGLE_SAMPLE)
        self.assertEqual(dmarcworker.extract_report(data), data.decode())

    def testExtractReportString(self):
        """Test extract report function for XML and JSON string input"""
        xml = read_sample(GOOGLE_SAMPLE, "r")
        self.assertEqual(dmarcworker.extract_report(xml), xml)
        tls = read_sample(TLS_SAMPLE, "r")
        self.assertEqual(dmarcworker.extract_report(tls), tls)

    def testExtractReportGZip(self):
        """Test extract report function for gzip input"""
        data = read_sample(GOOGLE_SAMPLE)
        self.assertEqual(
            dmarcworker.extract_report(gzip.compress(data)), data.decode()
        )

    def testExtractReportZip(self):
        """Test extract report function for zip input"""
        data = read_sample(FLAT_SAMPLE)
        zip_buffer = BytesIO()
        with zipfile.ZipFile(zip_buffer, "w") as _zip:
            _zip.writestr("report.xml", data)
        self.assertEqual(
            dmarcworker.extract_report(zip_buffer.getvalue()), data.decode()
        )

    def testExtractReportBase64(self):
        """Test extract report function for base64-encoded gzip input"""
        data = read_sample(TLS_SAMPLE)
        encoded = b64encode(gzip.compress(data)).decode("ascii")
        self.assertEqual(dmarcworker.extract_report(encoded), data.decode())

    def testExtractReportFileObject(self):
        """Test extract report function for file-like input"""
        data = read_sample(GOOGLE_SAMPLE)
        self.assertEqual(dmarcworker.extract_report(BytesIO(data)), data.decode())
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.extract_report(StringIO(data.decode()))

    def testExtractReportInvalid(self):
        """Test extract report function for content that is not a report"""
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.extract_report(b"\x00\x01\x02 not a report")
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.extract_report(b"\x1f\x8b truncated gzip")

    def testDetectReportType(self):
        """Test report type detection"""
        detect = dmarcworker.detect_report_type
        self.assertEqual(detect("<feedback><report_metadata/></feedback>"), "aggregate")
        self.assertEqual(detect('<?xml version="1.0"?><x/>'), "aggregate")
        self.assertEqual(detect("<report_metadata></report_metadata>"), "aggregate")
        self.assertEqual(detect('{"organization-name": "Google Inc."}'), "smtp_tls")
        self.assertIsNone(detect('{"some": "json"}'))
        self.assertIsNone(detect("plain text"))

    def testAggregateSamples(self):
        """Test sample aggregate/rua DMARC reports"""
        print()
        sample_paths = glob("samples/aggregate/*")
        for sample_path in sample_paths:
            if os.path.isdir(sample_path):
                continue
            print("Testing {0}: ".format(sample_path), end="")
            parsed_report = dmarcworker.parse_report_file(sample_path)
            self.assertEqual(parsed_report["report_type"], "aggregate")
            dmarcworker.parsed_aggregate_reports_to_csv(parsed_report["report"])
            print("Passed!")

    def testAggregateReportCounts(self):
        """Test DKIM and SPF result counting in a feedback report"""
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        self.assertEqual(report["report_id"], "5717107811868587391")
        self.assertEqual(report["org_name"], "google.com")
        self.assertEqual(report["domain"], "example.com")
        self.assertEqual(report["begin_date"], 1700006400)
        self.assertEqual(report["end_date"], 1700092799)
        self.assertEqual(report["dkim_pass"], 2)
        self.assertEqual(report["dkim_fail"], 1)
        self.assertEqual(report["dkim_temperror"], 0)
        self.assertEqual(report["spf_pass"], 1)
        # softfail is not counted
        self.assertEqual(report["spf_fail"], 0)
        self.assertEqual(report["spf_temperror"], 0)
        self.assertEqual(report["policy_p"], "reject")
        self.assertEqual(report["raw_xml"], read_sample(GOOGLE_SAMPLE, "r"))

    def testAggregateReportFlatLayout(self):
        """Test reports without a feedback element"""
        report = dmarcworker.parse_report_file(FLAT_SAMPLE)["report"]
        self.assertEqual(report["report_id"], "example.com.1700006400.flat")
        self.assertEqual(report["org_name"], "Example Mail Service")
        self.assertEqual(report["policy_p"], "quarantine")
        self.assertEqual(report["dkim_temperror"], 1)
        self.assertEqual(report["spf_temperror"], 1)
        self.assertEqual(report["dkim_pass"] + report["spf_pass"], 0)

    def testAggregateReportCompressedSamples(self):
        """Test that compressed samples parse like their XML"""
        gz_report = dmarcworker.parse_report_file(
            "samples/aggregate/google.com!example.com!1700092800!1700179199.xml.gz"
        )["report"]
        self.assertEqual(gz_report["report_id"], "5717107811868587392")
        self.assertEqual(gz_report["begin_date"], 1700092800)
        self.assertEqual(gz_report["dkim_pass"], 2)
        zip_report = dmarcworker.parse_report_file(
            "samples/aggregate/mail.example.org!example.com!1700092800!1700179199.zip"
        )["report"]
        flat_report = dmarcworker.parse_report_file(FLAT_SAMPLE)["report"]
        self.assertEqual(zip_report, flat_report)

    def testAggregateReportSingleElements(self):
        """Test single records and auth results in place of lists"""
        xml = MINIMAL_FEEDBACK.format(
            records="<record><auth_results>"
            "<dkim><domain>example.com</domain><result>pass</result></dkim>"
            "<spf><domain>example.com</domain><result>fail</result></spf>"
            "</auth_results></record>"
        )
        report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["dkim_pass"], 1)
        self.assertEqual(report["spf_fail"], 1)
        self.assertEqual(report["spf_pass"], 0)

    def testAggregateReportWithoutRecords(self):
        """Test that a report without records has zero counts"""
        report = dmarcworker.parse_aggregate_report_xml(
            MINIMAL_FEEDBACK.format(records="")
        )
        for counter in ("dkim_pass", "dkim_fail", "dkim_temperror",
                        "spf_pass", "spf_fail", "spf_temperror"):
            self.assertEqual(report[counter], 0)
        self.assertEqual(report["report_id"], "acme-1")

    def testAggregateReportIgnoredResults(self):
        """Test that only pass, fail and temperror are counted"""
        xml = MINIMAL_FEEDBACK.format(
            records="<record><row><count>1</count></row></record>"
            "<record><auth_results>"
            "<dkim><result>PASS</result></dkim>"
            "<dkim><result>permerror</result></dkim>"
            "<dkim><result>neutral</result></dkim>"
            "<dkim><domain>example.com</domain></dkim>"
            "<spf><result>none</result></spf>"
            "<spf><result>TempError</result></spf>"
            "</auth_results></record>"
        )
        report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["dkim_pass"], 1)
        self.assertEqual(report["dkim_fail"], 0)
        self.assertEqual(report["spf_temperror"], 1)
        self.assertEqual(report["spf_pass"] + report["spf_fail"], 0)

    def testAggregateReportAttributes(self):
        """Test elements that carry attributes"""
        xml = """<feedback xmlns="urn:ietf:params:xml:ns:dmarc-2.0">
  <report_metadata>
    <org_name lang="en">Acme</org_name>
    <report_id type="uuid">acme-2</report_id>
    <date_range><begin unit="s">1700000000</begin><end>1700086399</end></date_range>
  </report_metadata>
  <policy_published><domain>example.com</domain><p>none</p></policy_published>
</feedback>"""
        report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["org_name"], "Acme")
        self.assertEqual(report["report_id"], "acme-2")
        self.assertEqual(report["begin_date"], 1700000000)

    def testAggregateReportDefaults(self):
        """Test defaults for missing and malformed values"""
        xml = """<feedback>
  <report_metadata>
    <org_name>Acme</org_name>
    <date_range><begin>soon</begin><end> 1700086399.75</end></date_range>
  </report_metadata>
  <policy_published><domain>example.com</domain><p></p></policy_published>
</feedback>"""
        report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["report_id"], "")
        self.assertEqual(report["begin_date"], 0)
        self.assertEqual(report["end_date"], 1700086399)
        self.assertEqual(report["policy_p"], "none")

        report = dmarcworker.parse_aggregate_report_xml(
            "<feedback><report_metadata><org_name>Acme</org_name>"
            "</report_metadata></feedback>"
        )
        self.assertEqual(report["domain"], "")
        self.assertEqual(report["policy_p"], "none")

    def testAggregateReportDateOrder(self):
        """Test that date ordering is not validated"""
        xml = """<feedback>
  <report_metadata>
    <report_id>backwards</report_id>
    <date_range><begin>1700086399</begin><end>1700000000</end></date_range>
  </report_metadata>
</feedback>"""
        report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["begin_date"], 1700086399)
        self.assertEqual(report["end_date"], 1700000000)

    def testAggregateReportCountLayouts(self):
        """Test that counts do not depend on single or repeated elements"""

        def dkim(result):
            return "<dkim><domain>example.com</domain>" \
                   "<result>{0}</result></dkim>".format(result)

        def record(*results):
            return "<record><auth_results>{0}</auth_results></record>".format(
                "".join(dkim(result) for result in results))

        results = ["pass", "pass", "pass", "fail", "fail", "temperror"]
        layouts = [
            record(*results),
            "".join(record(result) for result in results),
            record("pass") + record("pass", "fail") + record("temperror")
            + record("pass", "fail"),
        ]
        for layout in layouts:
            report = dmarcworker.parse_aggregate_report_xml(
                MINIMAL_FEEDBACK.format(records=layout))
            self.assertEqual(report["dkim_pass"], 3)
            self.assertEqual(report["dkim_fail"], 2)
            self.assertEqual(report["dkim_temperror"], 1)

    def testAggregateReportIdempotence(self):
        """Test that parsing the same text twice gives the same report"""
        xml = read_sample(GOOGLE_SAMPLE, "r")
        first = dmarcworker.parse_aggregate_report_xml(xml)
        second = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(first, second)
        self.assertEqual(second["raw_xml"], xml)

    def testAggregateReportWithoutMetadata(self):
        """Test a report without report_metadata or policy_published"""
        report = dmarcworker.parse_aggregate_report_xml(
            "<feedback><record><row><count>1</count></row></record></feedback>"
        )
        for field in ("report_id", "org_name", "domain"):
            self.assertEqual(report[field], "")
        for counter in ("dkim_pass", "dkim_fail", "dkim_temperror",
                        "spf_pass", "spf_fail", "spf_temperror",
                        "begin_date", "end_date"):
            self.assertEqual(report[counter], 0)
        self.assertEqual(report["policy_p"], "none")

    def testAggregateReportHeaders(self):
        """Test byte order marks, declarations and doctypes"""
        xml = '\ufeff<?xml version="1.0" encoding="UTF-8"?>\n' \
              "<!DOCTYPE feedback>\n" + MINIMAL_FEEDBACK.format(records="")
        report = dmarcworker.parse_aggregate_report_xml(xml.encode("utf-8"))
        self.assertEqual(report["report_id"], "acme-1")
        self.assertEqual(report["raw_xml"], xml)

    def testAggregateReportRecovery(self):
        """Test recovery from malformed XML"""
        xml = (
            "<feedback><report_metadata><org_name>Broken Org</org_name>"
            "<report_id>broken-1</report_id>"
            "<date_range><begin>1</begin><end>2</end></date_range>"
            "</report_metadata><policy_published><domain>example.com</domain>"
            "<p>none</p></policy_published><record><auth_results><dkim>"
            "<result>pass</result></dkim></auth_results></record>"
        )
        with self.assertLogs("dmarcworker", level="WARNING"):
            report = dmarcworker.parse_aggregate_report_xml(xml)
        self.assertEqual(report["report_id"], "broken-1")
        self.assertEqual(report["dkim_pass"], 1)

    def testAggregateReportInvalidStructure(self):
        """Test documents that are not aggregate reports"""
        with self.assertRaises(dmarcworker.InvalidAggregateReport):
            dmarcworker.parse_aggregate_report_xml("<foo><bar>1</bar></foo>")
        with self.assertRaises(dmarcworker.InvalidDMARCReport):
            dmarcworker.parse_aggregate_report_xml("this is not xml")

    def testEmptySample(self):
        """Test empty/unparasable report"""
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.parse_report_file("samples/empty.xml")
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.parse_report_file("samples/does-not-exist.xml")

    def testSmtpTlsSamples(self):
        """Test sample SMTP TLS reports"""
        print()
        sample_paths = glob("samples/smtp_tls/*")
        for sample_path in sample_paths:
            if os.path.isdir(sample_path):
                continue
            print("Testing {0}: ".format(sample_path), end="")
            parsed_report = dmarcworker.parse_report_file(sample_path)
            self.assertEqual(parsed_report["report_type"], "smtp_tls")
            dmarcworker.parsed_smtp_tls_reports_to_csv(parsed_report["report"])
            print("Passed!")

    def testSmtpTlsReportVerbatim(self):
        """Test that SMTP TLS reports are returned as sent"""
        report_json = read_sample(TLS_SAMPLE, "r")
        report = dmarcworker.parse_smtp_tls_report_json(report_json)
        self.assertEqual(report, json.loads(report_json))
        self.assertEqual(report["organization-name"], "Google Inc.")

        report = dmarcworker.parse_smtp_tls_report_json(
            '{"organization-name": "x", "report-id": "y", "date-range": {},'
            ' "policies": "not validated", "extra": [1, 2]}'
        )
        self.assertEqual(report["policies"], "not validated")
        self.assertEqual(report["extra"], [1, 2])

        report = dmarcworker.parse_smtp_tls_report_json(
            b'{"organization-name": "x", "report-id": "y", "date-range": {}}'
        )
        self.assertIsNotNone(report)
        self.assertNotIn("policies", report)

    def testSmtpTlsReportInvalid(self):
        """Test rejected SMTP TLS reports"""
        invalid_reports = [
            "{not json",
            "[]",
            '"a string"',
            '{"report-id": "y", "date-range": {}}',
            '{"organization-name": 1, "report-id": "y", "date-range": {}}',
            '{"organization-name": "x", "date-range": {}}',
            '{"organization-name": "x", "report-id": "y"}',
            '{"organization-name": "x", "report-id": "y", "date-range": "today"}',
        ]
        for invalid_report in invalid_reports:
            with self.assertLogs("dmarcworker", level="ERROR"):
                self.assertIsNone(
                    dmarcworker.parse_smtp_tls_report_json(invalid_report)
                )

    def testSmtpTlsReportDeeplyNested(self):
        """Test that deeply nested JSON is rejected instead of raising"""
        report = "[" * 200000 + "]" * 200000
        with self.assertLogs("dmarcworker", level="ERROR"):
            self.assertIsNone(dmarcworker.parse_smtp_tls_report_json(report))

    def testParseReportErrors(self):
        """Test errors raised for unknown and invalid reports"""
        with self.assertRaises(dmarcworker.InvalidSMTPTLSReport):
            dmarcworker.parse_report(b'{"organization-name": 1}')
        with self.assertRaises(dmarcworker.ParserError):
            dmarcworker.parse_report(b'{"hello": "world"}')

    def testAggregateCsvRows(self):
        """Test aggregate report CSV rows"""
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        rows = dmarcworker.parsed_aggregate_reports_to_csv_rows(report)
        self.assertEqual(len(rows), 1)
        self.assertNotIn("raw_xml", rows[0])
        self.assertEqual(rows[0]["dkim_pass"], 2)
        rows = dmarcworker.parsed_aggregate_reports_to_csv_rows(
            [report, report], include_raw_xml=True
        )
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1]["raw_xml"], report["raw_xml"])

        csv = dmarcworker.parsed_aggregate_reports_to_csv(report)
        self.assertTrue(csv.startswith("report_id,org_name,domain,"))
        self.assertIn("5717107811868587391,google.com,example.com", csv)

    def testSmtpTlsCsvRows(self):
        """Test SMTP TLS report CSV rows"""
        report = dmarcworker.parse_report_file(TLS_SAMPLE)["report"]
        rows = dmarcworker.parsed_smtp_tls_reports_to_csv_rows(report)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["policy_domain"], "example.com")
        self.assertEqual(rows[0]["policy_type"], "sts")
        self.assertEqual(rows[0]["total_success"], 120)
        self.assertEqual(rows[0]["total_failures"], 2)
        self.assertEqual(rows[0]["begin_date"], 1704067200)
        self.assertEqual(rows[0]["end_date"], 1704153599)
        failure_details = json.loads(rows[0]["failure_details"])
        self.assertEqual(failure_details[0]["result-type"], "certificate-expired")

        report = dmarcworker.parse_report_file(TLS_FLAT_SAMPLE)["report"]
        rows = dmarcworker.parsed_smtp_tls_reports_to_csv_rows(report)
        self.assertEqual([row["policy_domain"] for row in rows],
                         ["example.com", "example.net"])
        self.assertEqual(rows[0]["failure_details"], "[]")
        self.assertEqual(rows[1]["policy_type"], "no-policy-found")

        report = dmarcworker.parse_smtp_tls_report_json(
            '{"organization-name": "x", "report-id": "y", "date-range": {},'
            ' "policies": [{"policy-domain": "example.com"}]}'
        )
        rows = dmarcworker.parsed_smtp_tls_reports_to_csv_rows(report)
        self.assertEqual(rows[0]["total_success"], 0)
        self.assertEqual(rows[0]["total_failures"], 0)
        self.assertIsNone(rows[0]["begin_date"])


class EmailTest(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryQueueStorage()
        self.sender = FakeSender()
        self.queue = ReplyQueue(
            self.storage, self.sender, clock=FakeClock(), send_timeout=None
        )

    def testParseEmail(self):
        """Test email parsing"""
        parsed_email = dmarcworker.utils.parse_email(read_sample(AGGREGATE_EMAIL))
        self.assertEqual(parsed_email["message_id"],
                         "<5717107811868587391@google.com>")
        self.assertEqual(parsed_email["from"]["domain"], "google.com")
        self.assertEqual(len(parsed_email["authentication_results"]), 1)
        self.assertEqual(len(parsed_email["attachments"]), 1)
        attachment = parsed_email["attachments"][0]
        self.assertEqual(attachment["mail_content_type"], "application/gzip")
        self.assertTrue(attachment["payload"].startswith(b"\x1f\x8b"))

    def testParseSmtpTlsEmail(self):
        """Test email parsing of an SMTP TLS report"""
        parsed_email = dmarcworker.utils.parse_email(
            read_sample(TLS_EMAIL).decode("utf-8")
        )
        self.assertEqual(parsed_email["message_id"],
                         "<tlsrpt-2024-01-01@google.com>")
        self.assertEqual(parsed_email["headers"]["TLS-Report-Domain"],
                         "example.com")
        self.assertEqual(parsed_email["from"]["address"],
                         "noreply-smtp-tls-reporting@google.com")
        self.assertEqual(len(parsed_email["attachments"]), 1)
        attachment = parsed_email["attachments"][0]
        self.assertEqual(attachment["mail_content_type"],
                         "application/tlsrpt+json")
        self.assertEqual(attachment["filename"],
                         "google.com!example.com!1704067200!1704153599.json")
        self.assertEqual(json.loads(attachment["payload"])["report-id"],
                         "2024-01-01T00:00:00Z_example.com")

    def testDmarcResult(self):
        """Test reading the DMARC verdict from Authentication-Results"""
        self.assertEqual(
            get_dmarc_result(["mx.example.com; spf=pass; dmarc=PASS header.from=a"]),
            "pass",
        )
        self.assertEqual(get_dmarc_result(["mx; dmarc=fail (p=none)"]), "fail")
        self.assertIsNone(get_dmarc_result(["mx.example.com; spf=pass"]))
        self.assertIsNone(get_dmarc_result([]))

    def testIngestAggregateEmail(self):
        """Test ingesting an aggregate report email"""
        results = ingest_email(
            read_sample(AGGREGATE_EMAIL), queue=self.queue, now=NOW
        )
        self.assertEqual(len(results["aggregate_reports"]), 1)
        self.assertEqual(results["smtp_tls_reports"], [])
        job = self.queue.get_job("5717107811868587391")
        self.assertEqual(job["attempts"], 0)
        message = job["message"]
        self.assertEqual(message["message_id"], "<5717107811868587391@google.com>")
        self.assertEqual(message["reply_to"], "noreply-dmarc-support@google.com")
        self.assertTrue(message["subject"].startswith("Report domain: example.com"))
        self.assertEqual(message["send_at"], NOW + 3600 * 1000)
        self.assertEqual(self.queue.next_wake(), NOW + 3600 * 1000)

    def testIngestSmtpTlsEmail(self):
        """Test ingesting an SMTP TLS report email"""
        results = ingest_email(read_sample(TLS_EMAIL), queue=self.queue, now=NOW)
        self.assertEqual(results["aggregate_reports"], [])
        self.assertEqual(len(results["smtp_tls_reports"]), 1)
        self.assertEqual(results["smtp_tls_reports"][0]["report-id"],
                         "2024-01-01T00:00:00Z_example.com")
        self.assertEqual(self.queue.pending_jobs(), [])

    def testIngestTrustedReporters(self):
        """Test that untrusted reporters are ignored"""
        data = read_sample(AGGREGATE_EMAIL)
        with self.assertLogs("dmarcworker", level="WARNING"):
            results = ingest_email(
                data, queue=self.queue, trusted_reporters=["yahoo.com"], now=NOW
            )
        self.assertEqual(results["aggregate_reports"], [])
        self.assertEqual(self.queue.pending_jobs(), [])

        results = ingest_email(
            data, queue=self.queue, trusted_reporters=[" Google.com "], now=NOW
        )
        self.assertEqual(len(results["aggregate_reports"]), 1)

    def testIngestDmarcFail(self):
        """Test that emails failing DMARC are rejected"""
        data = read_sample(AGGREGATE_EMAIL).replace(b"dmarc=pass", b"dmarc=fail")
        with self.assertLogs("dmarcworker", level="WARNING"):
            results = ingest_email(data, queue=self.queue, now=NOW)
        self.assertEqual(results["aggregate_reports"], [])
        self.assertEqual(self.queue.pending_jobs(), [])

    def testIngestWithoutAuthenticationResults(self):
        """Test that a missing DMARC verdict is accepted"""
        data = read_sample(AGGREGATE_EMAIL).replace(
            b"Authentication-Results:", b"X-Original-Authentication-Results:"
        ).replace(b"dmarc=pass", b"dmarc=fail")
        results = ingest_email(data, queue=self.queue, now=NOW)
        self.assertEqual(len(results["aggregate_reports"]), 1)

    def testIngestWithoutAttachments(self):
        """Test emails without report attachments"""
        data = (
            b"From: reports@example.net\r\n"
            b"Message-ID: <empty@example.net>\r\n"
            b"Subject: Nothing here\r\n"
            b"\r\n"
            b"No report attached.\r\n"
        )
        with self.assertLogs("dmarcworker", level="ERROR"):
            results = ingest_email(data, queue=self.queue, now=NOW)
        self.assertEqual(results["aggregate_reports"], [])

    def testIngestStoresReports(self):
        """Test that ingested reports are saved"""
        with tempfile.TemporaryDirectory() as tmp_dir:
            database = SQLiteReportStore(os.path.join(tmp_dir, "reports.sqlite"))
            store = ReportStore(database=database)
            ingest_email(read_sample(AGGREGATE_EMAIL), store, now=NOW)
            ingest_email(read_sample(TLS_EMAIL), store, now=NOW)
            saved = database.get_aggregate_report("5717107811868587391")
            self.assertEqual(saved["dkim_pass"], 2)
            rows = database.get_smtp_tls_rows("2024-01-01T00:00:00Z_example.com")
            self.assertEqual(len(rows), 1)
            store.close()


class ReplyQueueTest(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.storage = MemoryQueueStorage()
        self.sender = FakeSender()
        self.queue = ReplyQueue(
            self.storage, self.sender, clock=self.clock, send_timeout=None
        )

    def testEnqueueStoresJob(self):
        """Test that enqueue stores a job"""
        self.queue.enqueue(make_message("store-test"))
        job = self.storage.get("job:store-test")
        self.assertEqual(job["message"]["report_id"], "store-test")
        self.assertEqual(job["attempts"], 0)

    def testEnqueueSetsTimer(self):
        """Test that enqueue sets the timer"""
        self.queue.enqueue(make_message("later", NOW + 2 * MINUTE))
        self.assertEqual(self.storage.get_timer(), NOW + 2 * MINUTE)
        self.queue.enqueue(make_message("sooner", NOW + MINUTE))
        self.assertEqual(self.storage.get_timer(), NOW + MINUTE)
        self.queue.enqueue(make_message("latest", NOW + 3 * MINUTE))
        self.assertEqual(self.storage.get_timer(), NOW + MINUTE)

    def testEnqueueReplacesJob(self):
        """Test that a second enqueue for a report replaces the first"""
        self.sender.failing.add("rpt-1")
        self.queue.enqueue(make_message("rpt-1"))
        self.queue.fire()
        self.assertEqual(self.queue.get_job("rpt-1")["attempts"], 1)
        self.queue.enqueue(make_message("rpt-1", NOW + MINUTE))
        job = self.queue.get_job("rpt-1")
        self.assertEqual(job["attempts"], 0)
        self.assertEqual(job["message"]["send_at"], NOW + MINUTE)
        self.assertEqual(len(self.queue.pending_jobs()), 1)

    def testFireSendsDueJobs(self):
        """Test that due jobs are sent and deleted"""
        self.queue.enqueue(make_message("due-job"))
        result = self.queue.fire()
        self.assertEqual(result["sent"], ["due-job"])
        self.assertEqual(self.sender.sent, ["due-job"])
        self.assertEqual(self.storage.list("job:"), [])
        self.assertIsNone(self.storage.get_timer())
        self.assertIsNone(result["next_wake"])

    def testFireSkipsFutureJobs(self):
        """Test that future jobs are kept and the timer rescheduled"""
        future = NOW + 999999999
        self.queue.enqueue(make_message("future-job", future))
        result = self.queue.fire()
        self.assertEqual(result["sent"], [])
        self.assertEqual(self.sender.attempts, [])
        self.assertEqual(len(self.storage.list("job:")), 1)
        self.assertEqual(self.queue.get_job("future-job")["attempts"], 0)
        self.assertEqual(self.storage.get_timer(), future)

    def testFireMixedBatch(self):
        """Test that only due jobs are processed"""
        self.queue.enqueue(make_message("due-1"))
        self.queue.enqueue(make_message("due-2", NOW - 1000))
        self.queue.enqueue(make_message("not-yet", NOW + 999999999))
        self.queue.fire()
        keys = [key for key, _ in self.storage.list("job:")]
        self.assertEqual(keys, ["job:not-yet"])
        self.assertEqual(self.storage.get_timer(), NOW + 999999999)
        self.assertEqual(sorted(self.sender.sent), ["due-1", "due-2"])

    def testFireEmptyQueue(self):
        """Test firing a queue without jobs"""
        self.storage.set_timer(NOW)
        result = self.queue.fire()
        self.assertEqual(result["sent"] + result["retried"] + result["dropped"], [])
        self.assertIsNone(self.storage.get_timer())

    def testFailureRetriesWithBackoff(self):
        """Test retries at 5, 10, 20 and 40 minutes, then dropping"""
        self.sender.always_fail = True
        self.queue.enqueue(make_message("rpt-1"))
        for attempts, minutes in enumerate([5, 10, 20, 40], start=1):
            with self.assertLogs("dmarcworker", level="WARNING"):
                result = self.queue.fire()
            self.assertEqual(result["retried"], ["rpt-1"])
            job = self.queue.get_job("rpt-1")
            self.assertEqual(job["attempts"], attempts)
            self.assertEqual(job["message"]["send_at"],
                             self.clock.now + minutes * MINUTE)
            self.assertEqual(self.queue.next_wake(), job["message"]["send_at"])
            self.clock.now = job["message"]["send_at"]

        with self.assertLogs("dmarcworker", level="ERROR"):
            result = self.queue.fire()
        self.assertEqual(result["dropped"], ["rpt-1"])
        self.assertIsNone(self.queue.get_job("rpt-1"))
        self.assertIsNone(self.queue.next_wake())
        self.assertEqual(len(self.sender.attempts), 5)

    def testFailureDoesNotBlockOtherJobs(self):
        """Test that one failing job does not stop the others"""
        self.sender.failing.add("a-fails")
        self.queue.enqueue(make_message("a-fails"))
        self.queue.enqueue(make_message("b-succeeds"))
        result = self.queue.fire()
        self.assertEqual(result["retried"], ["a-fails"])
        self.assertEqual(result["sent"], ["b-succeeds"])
        self.assertEqual(self.queue.next_wake(), NOW + 5 * MINUTE)

    def testRetryPreservesMessage(self):
        """Test that a retried job keeps its message apart from send_at"""
        self.sender.always_fail = True
        message = make_message("rpt-1")
        self.queue.enqueue(message)
        self.queue.fire()
        retried = self.queue.get_job("rpt-1")["message"]
        for field in ("message_id", "reply_to", "report_id", "subject"):
            self.assertEqual(retried[field], message[field])

    def testSendTimeout(self):
        """Test that a send that does not finish in time is a failure"""
        sender = FakeSender(delay=0.5)
        queue = ReplyQueue(
            MemoryQueueStorage(), sender, clock=self.clock, send_timeout=0.05
        )
        queue.enqueue(make_message("slow"))
        result = queue.fire()
        self.assertEqual(result["retried"], ["slow"])
        self.assertEqual(queue.get_job("slow")["attempts"], 1)

    def testStorageErrorsPropagate(self):
        """Test that storage errors are raised to the caller"""
        queue = ReplyQueue(BrokenQueueStorage(), self.sender, clock=self.clock)
        with self.assertRaises(StorageError):
            queue.fire()

    def testEnqueueDuringFire(self):
        """Test that a job enqueued while a fire is sending keeps a timer"""
        sender = BlockingSender()
        queue = ReplyQueue(self.storage, sender, clock=self.clock,
                           send_timeout=None)
        queue.enqueue(make_message("old"))
        fire_thread = threading.Thread(target=queue.fire)
        fire_thread.start()
        self.assertTrue(sender.started.wait(5))

        enqueue_thread = threading.Thread(
            target=queue.enqueue, args=(make_message("new", NOW + MINUTE),)
        )
        enqueue_thread.start()
        enqueue_thread.join(0.1)
        # Waits for the fire to finish
        self.assertTrue(enqueue_thread.is_alive())
        sender.release.set()
        fire_thread.join(5)
        enqueue_thread.join(5)

        self.assertEqual(sender.sent, ["old"])
        self.assertEqual(queue.get_job("new")["attempts"], 0)
        self.assertEqual(queue.next_wake(), NOW + MINUTE)
        self.assertTrue(timer_covers_jobs(queue))

        self.clock.now = NOW + MINUTE
        result = QueueRunner(queue).run_pending()
        self.assertEqual(result["sent"], ["new"])
        self.assertIsNone(queue.next_wake())

    def testQueueRunner(self):
        """Test that the runner only fires an expired timer"""
        runner = QueueRunner(self.queue, check_timeout=0.05)
        self.assertIsNone(runner.run_pending())
        runner.enqueue(make_message("later", NOW + MINUTE))
        self.assertIsNone(runner.run_pending())
        self.clock.now = NOW + MINUTE
        result = runner.run_pending()
        self.assertEqual(result["sent"], ["later"])

    def testQueueRunnerWatch(self):
        """Test the watch loop"""
        runner = QueueRunner(self.queue, check_timeout=0.05)
        thread = threading.Thread(target=runner.watch)
        thread.start()
        try:
            runner.enqueue(make_message("watched"))
            deadline = time.time() + 5
            while len(self.sender.sent) == 0 and time.time() < deadline:
                time.sleep(0.01)
        finally:
            runner.stop()
            thread.join(5)
        self.assertEqual(self.sender.sent, ["watched"])
        self.assertFalse(thread.is_alive())


class StorageTest(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp_dir.cleanup)
        self.path = os.path.join(self.tmp_dir.name, "queue.sqlite")

    def testSQLiteQueueStorage(self):
        """Test SQLite queue storage"""
        storage = SQLiteQueueStorage(self.path)
        self.assertIsNone(storage.get("job:a"))
        storage.put("job:b", {"attempts": 1})
        storage.put("job:a", {"attempts": 0})
        storage.put("other:c", {"attempts": 2})
        storage.put("job:a", {"attempts": 3})
        self.assertEqual(storage.get("job:a"), {"attempts": 3})
        self.assertEqual(
            storage.list("job:"),
            [("job:a", {"attempts": 3}), ("job:b", {"attempts": 1})],
        )
        storage.delete("job:a")
        storage.delete("job:missing")
        self.assertEqual([key for key, _ in storage.list("job:")], ["job:b"])

        self.assertIsNone(storage.get_timer())
        storage.set_timer(NOW)
        storage.set_timer(NOW + MINUTE)
        self.assertEqual(storage.get_timer(), NOW + MINUTE)
        storage.set_timer(None)
        self.assertIsNone(storage.get_timer())
        storage.close()

    def testSQLiteQueueStorageNamespaces(self):
        """Test that namespaces do not share jobs or timers"""
        first = SQLiteQueueStorage(self.path, namespace="first")
        second = SQLiteQueueStorage(self.path, namespace="second")
        first.put("job:a", {"attempts": 0})
        first.set_timer(NOW)
        self.assertEqual(second.list("job:"), [])
        self.assertIsNone(second.get_timer())
        first.close()
        second.close()

    def testQueueSurvivesRestart(self):
        """Test that jobs and the timer persist across instances"""
        storage = SQLiteQueueStorage(self.path)
        queue = ReplyQueue(storage, FakeSender(), clock=FakeClock(),
                           send_timeout=None)
        queue.enqueue(make_message("durable", NOW + MINUTE))
        storage.close()

        sender = FakeSender()
        clock = FakeClock(NOW + MINUTE)
        storage = SQLiteQueueStorage(self.path)
        queue = ReplyQueue(storage, sender, clock=clock, send_timeout=None)
        self.assertEqual(queue.next_wake(), NOW + MINUTE)
        self.assertEqual(queue.get_job("durable")["message"]["report_id"],
                         "durable")
        queue.fire()
        self.assertEqual(sender.sent, ["durable"])
        self.assertEqual(queue.pending_jobs(), [])
        storage.close()

    def testSQLiteQueueStorageTransaction(self):
        """Test that SQLite transactions commit together or not at all"""
        storage = SQLiteQueueStorage(self.path)
        other = SQLiteQueueStorage(self.path)
        with self.assertRaises(RuntimeError):
            with storage.transaction():
                storage.put("job:a", {"attempts": 0})
                storage.set_timer(NOW)
                raise RuntimeError("aborted")
        self.assertIsNone(other.get("job:a"))
        self.assertIsNone(other.get_timer())

        with storage.transaction():
            with storage.transaction():
                storage.put("job:b", {"attempts": 1})
            storage.set_timer(NOW)
        self.assertEqual(other.get("job:b"), {"attempts": 1})
        self.assertEqual(other.get_timer(), NOW)
        storage.close()
        other.close()

    def _fire_while_enqueueing(self, fired_message, enqueued_message):
        clock = FakeClock()
        sender = BlockingSender()
        firing_storage = SQLiteQueueStorage(self.path)
        enqueueing_storage = SQLiteQueueStorage(self.path)
        firing = ReplyQueue(firing_storage, sender, clock=clock,
                            send_timeout=None)
        enqueueing = ReplyQueue(enqueueing_storage, FakeSender(), clock=clock,
                                send_timeout=None)
        firing.enqueue(fired_message)

        fire_thread = threading.Thread(target=firing.fire)
        fire_thread.start()
        self.assertTrue(sender.started.wait(5))
        enqueue_thread = threading.Thread(
            target=enqueueing.enqueue, args=(enqueued_message,)
        )
        enqueue_thread.start()
        enqueue_thread.join(0.1)
        sender.release.set()
        fire_thread.join(5)
        enqueue_thread.join(5)
        self.assertFalse(fire_thread.is_alive())
        self.assertFalse(enqueue_thread.is_alive())
        self.addCleanup(firing_storage.close)
        self.addCleanup(enqueueing_storage.close)
        return firing, sender, clock

    def testEnqueueDuringFireAcrossInstances(self):
        """Test that a job enqueued by another process while a fire is
        sending keeps a timer"""
        queue, sender, clock = self._fire_while_enqueueing(
            make_message("old", NOW), make_message("new", NOW + MINUTE)
        )
        self.assertEqual(sender.sent, ["old"])
        self.assertIsNone(queue.get_job("old"))
        self.assertEqual(queue.get_job("new")["attempts"], 0)
        self.assertTrue(timer_covers_jobs(queue))

        clock.now = NOW + MINUTE
        result = QueueRunner(queue).run_pending()
        self.assertEqual(result["sent"], ["new"])
        self.assertEqual(sender.sent, ["old", "new"])
        self.assertEqual(queue.pending_jobs(), [])

    def testReenqueueDuringFireAcrossInstances(self):
        """Test that a job replaced by another process while it is being
        sent is kept"""
        queue, sender, clock = self._fire_while_enqueueing(
            make_message("same", NOW), make_message("same", NOW + MINUTE)
        )
        self.assertEqual(sender.sent, ["same"])
        job = queue.get_job("same")
        self.assertIsNotNone(job)
        self.assertEqual(job["message"]["send_at"], NOW + MINUTE)
        self.assertEqual(job["attempts"], 0)
        self.assertTrue(timer_covers_jobs(queue))

        clock.now = NOW + MINUTE
        result = QueueRunner(queue).run_pending()
        self.assertEqual(result["sent"], ["same"])
        self.assertEqual(queue.pending_jobs(), [])

    def testSQLiteReportStore(self):
        """Test saving reports to SQLite"""
        database = SQLiteReportStore(os.path.join(self.tmp_dir.name, "r.sqlite"))
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        self.assertTrue(database.save_aggregate_report(report))
        self.assertFalse(database.save_aggregate_report(report))
        self.assertEqual(database.get_aggregate_report(report["report_id"]),
                         report)
        self.assertIsNone(database.get_aggregate_report("missing"))

        tls_report = dmarcworker.parse_report_file(TLS_FLAT_SAMPLE)["report"]
        self.assertEqual(database.save_smtp_tls_report(tls_report), 2)
        rows = database.get_smtp_tls_rows("example-org-2024-01-02")
        self.assertEqual([row["policy_domain"] for row in rows],
                         ["example.com", "example.net"])
        self.assertEqual(rows[1]["total_failures"], 1)
        database.close()

    def testSQLiteReportStoreSkipsBadRows(self):
        """Test that a failing TLS row does not stop the others"""
        database = SQLiteReportStore(os.path.join(self.tmp_dir.name, "r.sqlite"))
        tls_report = dmarcworker.parse_smtp_tls_report_json(
            '{"organization-name": "x", "report-id": "y",'
            ' "date-range": {"start-datetime": "2024-01-01T00:00:00Z",'
            ' "end-datetime": "2024-01-01T23:59:59Z"},'
            ' "policies": [{"policy-type": "sts"},'
            ' {"policy-type": "sts", "policy-domain": "example.com"}]}'
        )
        with self.assertLogs("dmarcworker", level="ERROR"):
            saved = database.save_smtp_tls_report(tls_report)
        self.assertEqual(saved, 1)
        database.close()


class SinkTest(unittest.TestCase):
    def testReportStoreIsBestEffort(self):
        """Test that a failing sink does not stop the others"""

        class BrokenDatabase(object):
            def save_aggregate_report(self, report):
                raise DatabaseError("database is locked")

        class RecordingWebhook(object):
            def __init__(self):
                self.saved = []

            def save_aggregate_report_to_webhook(self, report):
                self.saved.append(report["report_id"])

        webhook = RecordingWebhook()
        store = ReportStore(database=BrokenDatabase(), webhook=webhook)
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        with self.assertLogs("dmarcworker", level="ERROR"):
            store.save_aggregate_report(report)
        self.assertEqual(webhook.saved, ["5717107811868587391"])

    def testWebhookClient(self):
        """Test webhook payloads"""
        client = WebhookClient("https://example.com/aggregate", "")
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        with mock.patch.object(client.session, "post") as post:
            client.save_aggregate_report_to_webhook(report)
            client.save_smtp_tls_report_to_webhook(
                dmarcworker.parse_report_file(TLS_SAMPLE)["report"]
            )
        self.assertEqual(post.call_count, 1)
        self.assertEqual(post.call_args[0][0], "https://example.com/aggregate")
        payload = json.loads(post.call_args[1]["data"])
        self.assertEqual(payload["report_type"], "aggregate")
        self.assertEqual(payload["counters"]["dkim_pass"], 2)
        self.assertNotIn("raw_xml", payload)
        client.close()

    def testWebhookClientErrors(self):
        """Test that webhook errors are logged"""
        client = WebhookClient("https://example.com/aggregate", "")
        report = dmarcworker.parse_report_file(GOOGLE_SAMPLE)["report"]
        with mock.patch.object(client.session, "post",
                               side_effect=requests.ConnectionError("down")):
            with self.assertLogs("dmarcworker", level="ERROR"):
                client.save_aggregate_report_to_webhook(report)
        client.close()


class ReplyTest(unittest.TestCase):
    def testBuildReplyMessage(self):
        """Test reply message defaults"""
        message = build_reply_message("<m@example.net>", "a@example.net",
                                      "rpt-1", now=NOW)
        self.assertEqual(message["subject"], "DMARC Report")
        self.assertEqual(message["send_at"], NOW + 3600 * 1000)
        message = build_reply_message("<m@example.net>", "a@example.net",
                                      "rpt-1", "Report", delay=0, now=NOW)
        self.assertEqual(message["subject"], "Report")
        self.assertEqual(message["send_at"], NOW)

    def testCreateEmail(self):
        """Test reply email headers and body"""
        sender = SMTPReplySender("smtp.example.com", "dmarc@example.com",
                                 "example.com")
        msg = sender.create_email(make_message("rpt-1"))
        self.assertEqual(msg["To"], "sender@example.com")
        self.assertEqual(msg["Subject"], "Re: DMARC Report - Processed")
        self.assertEqual(msg["In-Reply-To"], "<test@example.com>")
        self.assertEqual(msg["References"], "<test@example.com>")
        self.assertTrue(msg["Message-ID"].endswith("@example.com>"))
        self.assertIn("https://example.com/reports/rpt-1", msg.get_content())

    def testSendFailure(self):
        """Test that connection failures raise ReplyError"""
        sender = SMTPReplySender("127.0.0.1", "dmarc@example.com",
                                 "example.com", port=1, timeout=5)
        with self.assertRaises(ReplyError):
            sender.send(make_message("rpt-1"))


class CLITest(unittest.TestCase):
    def testStrToList(self):
        self.assertEqual(dmarcworker.cli._str_to_list(" a.com, b.com,,"),
                         ["a.com", "b.com"])

    def testConfigFile(self):
        """Test loading options from a configuration file"""
        with tempfile.TemporaryDirectory() as tmp_dir:
            config_path = os.path.join(tmp_dir, "dmarcworker.ini")
            with open(config_path, "w") as config_file:
                config_file.write(
                    "[general]\n"
                    "debug = True\n"
                    "output = out.json\n"
                    "[ingest]\n"
                    "trusted_reporters = google.com, yahoo.com\n"
                    "reply_delay = 60\n"
                    "[smtp]\n"
                    "host = smtp.example.com\n"
                    "from = dmarc@example.com\n"
                    "[queue]\n"
                    "max_attempts = 3\n"
                    "[sqlite]\n"
                    "path = reports.sqlite\n"
                )
            opts = dmarcworker.cli._parse_options(["-c", config_path, "a.xml"])
            self.assertEqual(opts.file_path, ["a.xml"])
            self.assertTrue(opts.silent)
            self.assertTrue(opts.debug)
            self.assertEqual(opts.output, "out.json")
            self.assertEqual(opts.trusted_reporters, ["google.com", "yahoo.com"])
            self.assertEqual(opts.reply_delay, 60.0)
            self.assertEqual(opts.smtp_domain, "example.com")
            self.assertEqual(opts.queue_max_attempts, 3)
            self.assertEqual(opts.sqlite_path, "reports.sqlite")

            opts = dmarcworker.cli._parse_options(
                ["-c", config_path, "--store", "other.sqlite"]
            )
            self.assertEqual(opts.sqlite_path, "other.sqlite")

    def testProcessFile(self):
        """Test processing report files and report emails"""
        opts = Namespace(trusted_reporters=[], reply_delay=3600)
        results = {"aggregate_reports": [], "smtp_tls_reports": []}
        dmarcworker.cli._process_file(GOOGLE_SAMPLE, opts, None, None, results)
        dmarcworker.cli._process_file(TLS_EMAIL, opts, None, None, results)
        self.assertEqual(len(results["aggregate_reports"]), 1)
        self.assertEqual(len(results["smtp_tls_reports"]), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
