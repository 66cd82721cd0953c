# -*- coding: utf-8 -*-

"""A Python package for ingesting DMARC aggregate and SMTP TLS reports"""

from __future__ import annotations

import binascii
import json
import re
import xml.parsers.expat as expat
import zipfile
import zlib
from csv import DictWriter
from io import BytesIO, StringIO
from typing import Any, BinaryIO, Optional, Union, cast

import lxml.etree as etree
import xmltodict

from dmarcworker.constants import __version__
from dmarcworker.log import logger
from dmarcworker.types import (
    AggregateReport,
    ParsedReport,
    SMTPTLSReport,
    SMTPTLSReportRow,
)
from dmarcworker.utils import decode_base64, human_timestamp_to_unix_timestamp

logger.debug("dmarcworker v{0}".format(__version__))

xml_header_regex = re.compile(r"^\s*<\?xml .*?>", re.MULTILINE)
xml_schema_regex = re.compile(r"</??xs:schema.*>", re.MULTILINE)
xml_doctype_regex = re.compile(r"<!DOCTYPE[^>]*>", re.IGNORECASE)
leading_integer_regex = re.compile(r"^\s*([+-]?\d+)")

MAGIC_ZIP = b"\x50\x4b\x03\x04"
MAGIC_GZIP = b"\x1f\x8b"
MAGIC_XML = b"\x3c\x3f\x78\x6d\x6c\x20"
MAGIC_JSON = b"\x7b"

# Synthetic container element, so documents with several top-level elements
# (the flat layout some reporters send) still parse as one tree
DOCUMENT_WRAPPER = "dmarcworker-document"

AUTH_MECHANISMS = ("dkim", "spf")
COUNTED_AUTH_RESULTS = ("pass", "fail", "temperror")

SMTP_TLS_REQUIRED_FIELDS = (
    ("organization-name", str),
    ("report-id", str),
    ("date-range", dict),
)


class ParserError(RuntimeError):
    """Raised whenever the parser fails for some reason"""


class InvalidDMARCReport(ParserError):
    """Raised when an invalid DMARC report is encountered"""


class InvalidSMTPTLSReport(ParserError):
    """Raised when an invalid SMTP TLS report is encountered"""


class InvalidAggregateReport(InvalidDMARCReport):
    """Raised when a DMARC aggregate report has no recognizable structure"""


def _to_list(value: Any) -> list[Any]:
    """Normalizes an element that may be absent, single or repeated"""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _first_mapping(value: Any) -> dict[str, Any]:
    for item in _to_list(value):
        if isinstance(item, dict):
            return item
    return {}


def _text(value: Any, default: str = "") -> str:
    """Returns the text of an element, ignoring any attributes it carries"""
    if isinstance(value, list):
        value = value[0] if len(value) > 0 else None
    if isinstance(value, dict):
        value = value.get("#text")
    if value is None:
        return default
    return str(value)


def _parse_timestamp(value: Any) -> int:
    match = leading_integer_regex.match(_text(value))
    if match is None:
        return 0
    return int(match.group(1))


def _parse_xml_document(xml: str) -> Any:
    """
    Parses report XML into a dict, recovering from broken markup when
    possible

    Args:
        xml (str): The report XML, without an XML declaration

    Returns:
        The contents of the synthetic document wrapper
    """
    wrapped = "<{0}>{1}</{0}>".format(DOCUMENT_WRAPPER, xml)
    try:
        return xmltodict.parse(wrapped)[DOCUMENT_WRAPPER]
    except (expat.ExpatError, ValueError) as e:
        logger.warning("Invalid XML: {0}. Attempting recovery".format(e.__str__()))

    try:
        tree = etree.fromstring(
            wrapped.encode("utf-8"),
            etree.XMLParser(recover=True, resolve_entities=False),
        )
    except etree.XMLSyntaxError as e:
        raise InvalidAggregateReport("Invalid XML: {0}".format(e.__str__()))
    if tree is None:
        raise InvalidAggregateReport("Invalid XML: nothing could be recovered")

    try:
        recovered = xmltodict.parse(etree.tostring(tree))
    except (expat.ExpatError, ValueError) as e:
        raise InvalidAggregateReport("Invalid XML: {0}".format(e.__str__()))
    return recovered.get(DOCUMENT_WRAPPER)


def _find_feedback(document: Any) -> dict[str, Any]:
    """Locates the element that holds the report metadata and records"""
    if not isinstance(document, dict):
        raise InvalidAggregateReport("Invalid XML structure")
    feedback = document.get("feedback")
    if isinstance(feedback, list):
        feedback = _first_mapping(feedback)
    if isinstance(feedback, dict):
        return feedback
    if "report_metadata" in document or "policy_published" in document:
        return document
    raise InvalidAggregateReport("Invalid XML structure")


def _count_auth_results(record: Any, counters: dict[str, int]) -> None:
    if not isinstance(record, dict):
        return
    auth_results = record.get("auth_results")
    if not isinstance(auth_results, dict):
        return
    for mechanism in AUTH_MECHANISMS:
        for auth_result in _to_list(auth_results.get(mechanism)):
            if not isinstance(auth_result, dict):
                continue
            result = _text(auth_result.get("result")).strip().lower()
            if result in COUNTED_AUTH_RESULTS:
                counters["{0}_{1}".format(mechanism, result)] += 1


def parse_aggregate_report_xml(xml: Union[str, bytes]) -> AggregateReport:
    """Parses a DMARC aggregate report XML string into a summary of
    authentication results

    Reports may wrap their contents in a ``feedback`` element or place
    ``report_metadata``, ``policy_published`` and ``record`` elements at the
    top level. Only ``pass``, ``fail`` and ``temperror`` DKIM and SPF results
    are counted.

    Args:
        xml (str): A string of DMARC aggregate report XML

    Returns:
        dict: The parsed aggregate DMARC report

    Raises:
        InvalidAggregateReport: The document is not a DMARC aggregate report
    """
    if isinstance(xml, bytes):
        xml = xml.decode(errors="ignore")
    raw_xml = xml

    # Remove the XML header and doctype (sometimes they are invalid)
    xml = xml.lstrip("\ufeff")
    xml = xml_header_regex.sub("", xml)
    xml = xml_doctype_regex.sub("", xml)

    # Remove invalid schema tags
    xml = xml_schema_regex.sub("", xml)

    feedback = _find_feedback(_parse_xml_document(xml))

    report_metadata = _first_mapping(feedback.get("report_metadata"))
    policy_published = _first_mapping(feedback.get("policy_published"))
    date_range = _first_mapping(report_metadata.get("date_range"))

    counters = {
        "{0}_{1}".format(mechanism, result): 0
        for mechanism in AUTH_MECHANISMS
        for result in COUNTED_AUTH_RESULTS
    }
    for record in _to_list(feedback.get("record")):
        _count_auth_results(record, counters)

    new_report: AggregateReport = {
        "report_id": _text(report_metadata.get("report_id")),
        "org_name": _text(report_metadata.get("org_name")),
        "domain": _text(policy_published.get("domain")),
        "begin_date": _parse_timestamp(date_range.get("begin")),
        "end_date": _parse_timestamp(date_range.get("end")),
        "dkim_pass": counters["dkim_pass"],
        "dkim_fail": counters["dkim_fail"],
        "dkim_temperror": counters["dkim_temperror"],
        "spf_pass": counters["spf_pass"],
        "spf_fail": counters["spf_fail"],
        "spf_temperror": counters["spf_temperror"],
        "policy_p": _text(policy_published.get("p")) or "none",
        "raw_xml": raw_xml,
    }

    return new_report


def parse_smtp_tls_report_json(
    report: Union[str, bytes],
) -> Optional[SMTPTLSReport]:
    """Parses an SMTP TLS (TLS-RPT) report

    Only ``organization-name``, ``report-id`` and ``date-range`` are
    validated. Everything else, including ``policies``, is returned as sent.

    Args:
        report (str): The report JSON

    Returns:
        dict: The report, or ``None`` if it is not a valid SMTP TLS report
    """
    if isinstance(report, bytes):
        report = report.decode("utf-8", errors="replace")

    try:
        report_dict = json.loads(report)
    except (ValueError, RecursionError) as e:
        logger.error("Failed to parse SMTP TLS report JSON: {0}".format(e))
        return None

    if not isinstance(report_dict, dict):
        logger.error("Invalid SMTP TLS report structure: not a JSON object")
        return None

    for field, field_type in SMTP_TLS_REQUIRED_FIELDS:
        if not isinstance(report_dict.get(field), field_type):
            logger.error(
                "Invalid SMTP TLS report structure: "
                "missing or invalid {0}".format(field)
            )
            return None

    return cast(SMTPTLSReport, report_dict)


def extract_report(content: Union[bytes, str, BinaryIO]) -> str:
    """
    Extracts text from a zip or gzip file, as a base64-encoded string,
    file-like object, or bytes.

    Args:
        content: report file as a base64-encoded string, file-like object or
        bytes.

    Returns:
        str: The extracted text

    """
    if isinstance(content, str):
        if content.lstrip().startswith(("<", "{")):
            return content
        try:
            content = decode_base64(content)
        except (binascii.Error, ValueError):
            raise ParserError("Not a valid zip, gzip, json, or xml file")
    elif not isinstance(content, bytes):
        content = content.read()
        if isinstance(content, str):
            raise ParserError("File objects must be opened in binary (rb) mode")

    header = content[:6]
    try:
        if header[: len(MAGIC_ZIP)] == MAGIC_ZIP:
            with zipfile.ZipFile(BytesIO(content)) as _zip:
                with _zip.open(_zip.namelist()[0]) as member:
                    report = member.read().decode(errors="ignore")
        elif header[: len(MAGIC_GZIP)] == MAGIC_GZIP:
            report = zlib.decompress(content, zlib.MAX_WBITS | 16).decode(
                errors="ignore"
            )
        elif (
            header[: len(MAGIC_XML)] == MAGIC_XML
            or content.lstrip(b"\xef\xbb\xbf \t\r\n").startswith((b"<", MAGIC_JSON))
        ):
            report = content.decode(errors="ignore")
        else:
            raise ParserError("Not a valid zip, gzip, json, or xml file")

    except ParserError:
        raise
    except Exception as error:
        raise ParserError("Invalid archive file: {0}".format(error.__str__()))

    return report


def detect_report_type(report: str) -> Optional[str]:
    """
    Guesses the type of an extracted report

    Args:
        report (str): Extracted report text

    Returns:
        str: ``aggregate``, ``smtp_tls``, or ``None`` if the type is unknown
    """
    if "<feedback" in report or "<?xml" in report or "<report_metadata" in report:
        return "aggregate"
    if '"organization-name"' in report:
        return "smtp_tls"
    return None


def parse_report(content: Union[bytes, str, BinaryIO]) -> ParsedReport:
    """Extracts, detects and parses an aggregate or SMTP TLS report

    Args:
        content: A report as bytes, a base64 string, or a file-like object

    Returns:
        dict: The parsed report, keyed by ``report_type`` and ``report``
    """
    report = extract_report(content)
    report_type = detect_report_type(report)
    if report_type == "aggregate":
        return {
            "report_type": "aggregate",
            "report": parse_aggregate_report_xml(report),
        }
    if report_type == "smtp_tls":
        smtp_tls_report = parse_smtp_tls_report_json(report)
        if smtp_tls_report is None:
            raise InvalidSMTPTLSReport("Invalid SMTP TLS report")
        return {"report_type": "smtp_tls", "report": smtp_tls_report}
    raise ParserError("Not an aggregate DMARC or SMTP TLS report")


def parse_report_file(file_path: str) -> ParsedReport:
    """Parses the report file at the given path"""
    try:
        with open(file_path, "rb") as report_file:
            return parse_report(report_file.read())
    except FileNotFoundError:
        raise ParserError("File was not found")


def parsed_aggregate_reports_to_csv_rows(
    reports: Union[AggregateReport, list[AggregateReport]],
    include_raw_xml: bool = False,
) -> list[dict[str, Any]]:
    """
    Converts one or more parsed aggregate reports to a list of dicts in flat
    CSV format

    Args:
        reports: A parsed aggregate report or list of parsed aggregate reports
        include_raw_xml (bool): Keep the original report XML in each row

    Returns:
        list: Parsed aggregate report data as a list of dicts in flat CSV
        format
    """
    if isinstance(reports, dict):
        reports = [reports]

    rows = []
    for report in reports:
        row = dict(report)
        if not include_raw_xml:
            row.pop("raw_xml", None)
        rows.append(row)

    return rows


def parsed_aggregate_reports_to_csv(
    reports: Union[AggregateReport, list[AggregateReport]],
) -> str:
    """
    Converts one or more parsed aggregate reports to flat CSV format, including
    headers

    Args:
        reports: A parsed aggregate report or list of parsed aggregate reports

    Returns:
        str: Parsed aggregate report data in flat CSV format, including headers
    """
    fields = [
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
    ]

    csv_file_object = StringIO(newline="\n")
    writer = DictWriter(csv_file_object, fields)
    writer.writeheader()

    for row in parsed_aggregate_reports_to_csv_rows(reports):
        writer.writerow(row)

    return csv_file_object.getvalue()


def parsed_smtp_tls_reports_to_csv_rows(
    reports: Union[SMTPTLSReport, list[SMTPTLSReport]],
) -> list[SMTPTLSReportRow]:
    """Converts one or more SMTP TLS reports into one flat row per policy.
    A report without policies yields no rows.

    Policies are not validated by the parser, so missing summary counts
    default to 0 and missing failure details to an empty list."""
    if isinstance(reports, dict):
        reports = [reports]

    rows: list[SMTPTLSReportRow] = []
    for report in reports:
        date_range = report["date-range"]
        begin_date = human_timestamp_to_unix_timestamp(date_range.get("start-datetime"))
        end_date = human_timestamp_to_unix_timestamp(date_range.get("end-datetime"))
        policies = report.get("policies") or []
        if not isinstance(policies, list):
            logger.warning(
                "Ignoring policies of SMTP TLS report {0}: not a list".format(
                    report["report-id"]
                )
            )
            continue
        for policy in policies:
            if not isinstance(policy, dict):
                continue
            summary = policy.get("summary")
            if not isinstance(summary, dict):
                summary = {}
            # RFC 8460 nests the policy fields in a "policy" object
            policy_fields = policy.get("policy")
            if not isinstance(policy_fields, dict):
                policy_fields = policy
            rows.append(
                {
                    "report_id": report["report-id"],
                    "org_name": report["organization-name"],
                    "policy_domain": policy_fields.get("policy-domain"),
                    "policy_type": policy_fields.get("policy-type"),
                    "total_success": summary.get("total-successful-session-count", 0),
                    "total_failures": summary.get("total-failure-session-count", 0),
                    "failure_details": json.dumps(policy.get("failure-details") or []),
                    "begin_date": begin_date,
                    "end_date": end_date,
                }
            )

    return rows


def parsed_smtp_tls_reports_to_csv(
    reports: Union[SMTPTLSReport, list[SMTPTLSReport]],
) -> str:
    """
    Converts one or more SMTP TLS reports to flat CSV format, including
    headers

    Args:
        reports: An SMTP TLS report or list of SMTP TLS reports

    Returns:
        str: SMTP TLS report data in flat CSV format, including headers
    """

    fields = [
        "report_id",
        "org_name",
        "policy_domain",
        "policy_type",
        "total_success",
        "total_failures",
        "failure_details",
        "begin_date",
        "end_date",
    ]

    csv_file_object = StringIO(newline="\n")
    writer = DictWriter(csv_file_object, fields)
    writer.writeheader()

    for row in parsed_smtp_tls_reports_to_csv_rows(reports):
        writer.writerow(row)

    return csv_file_object.getvalue()
