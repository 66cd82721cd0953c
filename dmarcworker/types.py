from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict, Union

# NOTE: This module is intentionally Python 3.9 compatible.
# - No PEP 604 unions (A | B)
# - No typing.NotRequired / Required (3.11+) to avoid an extra dependency.
#   For optional keys, use total=False TypedDicts.


class AggregateReport(TypedDict):
    report_id: str
    org_name: str
    domain: str
    begin_date: int
    end_date: int
    dkim_pass: int
    dkim_fail: int
    dkim_temperror: int
    spf_pass: int
    spf_fail: int
    spf_temperror: int
    policy_p: str
    raw_xml: str


# RFC 8460 keys are not valid identifiers, so the SMTP TLS types use the
# functional TypedDict syntax and keep the kebab-case names of the wire format.

SMTPTLSDateRange = TypedDict(
    "SMTPTLSDateRange",
    {
        "start-datetime": str,
        "end-datetime": str,
    },
)

SMTPTLSPolicySummary = TypedDict(
    "SMTPTLSPolicySummary",
    {
        "total-successful-session-count": int,
        "total-failure-session-count": int,
    },
)

SMTPTLSFailureDetails = TypedDict(
    "SMTPTLSFailureDetails",
    {
        "result-type": str,
        "sending-mta-ip": str,
        "receiving-mx-hostname": str,
        "failed-session-count": int,
    },
    total=False,
)

SMTPTLSPolicy = TypedDict(
    "SMTPTLSPolicy",
    {
        "policy-type": Literal["sts", "dane", "dane-only", "no-policy-found"],
        "policy-domain": str,
        "summary": SMTPTLSPolicySummary,
        "failure-details": List[SMTPTLSFailureDetails],
    },
    total=False,
)

SMTPTLSReport = TypedDict(
    "SMTPTLSReport",
    {
        "organization-name": str,
        "date-range": SMTPTLSDateRange,
        "contact-info": Union[str, List[str]],
        "report-id": str,
        # Absent when the reporter sent no policies
        "policies": List[SMTPTLSPolicy],
    },
    total=False,
)


class SMTPTLSReportRow(TypedDict):
    report_id: str
    org_name: str
    policy_domain: Optional[str]
    policy_type: Optional[str]
    total_success: int
    total_failures: int
    failure_details: str
    begin_date: Optional[int]
    end_date: Optional[int]


class ReplyMessage(TypedDict):
    message_id: str
    reply_to: str
    report_id: str
    subject: str
    send_at: int


class PendingJob(TypedDict):
    message: ReplyMessage
    attempts: int


class EmailAddress(TypedDict):
    display_name: Optional[str]
    address: str
    local: Optional[str]
    domain: Optional[str]


class EmailAttachment(TypedDict, total=False):
    filename: Optional[str]
    mail_content_type: Optional[str]
    content_transfer_encoding: Optional[str]
    binary: bool
    sha256: Optional[str]
    payload: bytes


ParsedEmail = TypedDict(
    "ParsedEmail",
    {
        # mailparser's mail JSON, narrowed to the fields report ingestion uses
        "headers": Dict[str, Any],
        "message_id": Optional[str],
        "subject": Optional[str],
        "from": Optional[EmailAddress],
        "authentication_results": List[str],
        "attachments": List[EmailAttachment],
    },
)


class AggregateParsedReport(TypedDict):
    report_type: Literal["aggregate"]
    report: AggregateReport


class SMTPTLSParsedReport(TypedDict):
    report_type: Literal["smtp_tls"]
    report: SMTPTLSReport


ParsedReport = Union[AggregateParsedReport, SMTPTLSParsedReport]


class ParsingResults(TypedDict):
    aggregate_reports: List[AggregateReport]
    smtp_tls_reports: List[SMTPTLSReport]


class FireResult(TypedDict):
    sent: List[str]
    retried: List[str]
    dropped: List[str]
    next_wake: Optional[int]
