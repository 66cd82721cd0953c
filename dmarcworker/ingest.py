# -*- coding: utf-8 -*-

"""Processes report emails end to end"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Union

from dmarcworker import InvalidDMARCReport, ParserError, parse_report
from dmarcworker.log import logger
from dmarcworker.reply import build_reply_message
from dmarcworker.report_store import ReportStore
from dmarcworker.types import ParsingResults
from dmarcworker.utils import parse_email

dmarc_result_regex = re.compile(r"\bdmarc=(\w+)", re.IGNORECASE)


def get_dmarc_result(authentication_results: Iterable[str]) -> Optional[str]:
    """
    Finds the DMARC verdict in Authentication-Results header values

    Returns:
        str: The lowercase verdict of the first ``dmarc=`` entry, or ``None``
    """
    for header in authentication_results:
        match = dmarc_result_regex.search(header)
        if match is not None:
            return match.group(1).lower()
    return None


def ingest_email(
    data: Union[str, bytes],
    store: Optional[ReportStore] = None,
    queue=None,
    *,
    trusted_reporters: Optional[Iterable[str]] = None,
    reply_delay: float = 3600,
    now: Optional[int] = None,
) -> ParsingResults:
    """
    Parses the reports attached to an email, saves them, and queues an
    acknowledgment reply for each aggregate report

    Args:
        data: The RFC 822 message
        store: Where to save parsed reports
        queue: A ``ReplyQueue`` or ``QueueRunner`` for acknowledgment replies
        trusted_reporters: Sender domains to accept reports from. Reports
            from any domain are accepted when empty or ``None``
        reply_delay (float): Seconds to wait before replying
        now (int): Current time in epoch milliseconds

    Returns:
        dict: The parsed aggregate and SMTP TLS reports
    """
    results: ParsingResults = {"aggregate_reports": [], "smtp_tls_reports": []}
    parsed_email = parse_email(data)

    sender = parsed_email["from"]
    sender_domain = "unknown"
    if sender is not None and sender["domain"]:
        sender_domain = sender["domain"]

    if trusted_reporters:
        trusted = set(domain.strip().lower() for domain in trusted_reporters)
        if sender_domain not in trusted:
            logger.warning("Untrusted reporter: {0}".format(sender_domain))
            return results

    # Only an explicit failure is rejected; a missing verdict is accepted
    dmarc_result = get_dmarc_result(parsed_email["authentication_results"])
    if dmarc_result == "fail":
        logger.warning("DMARC fail from {0}, rejecting".format(sender_domain))
        return results

    if len(parsed_email["attachments"]) == 0:
        logger.error("No attachments found in email from {0}".format(sender_domain))
        return results

    for attachment in parsed_email["attachments"]:
        try:
            parsed_report = parse_report(attachment["payload"])
        except InvalidDMARCReport as error:
            logger.warning(
                "Invalid aggregate report in {0}: {1}".format(
                    attachment["filename"], error.__str__()
                )
            )
            continue
        except ParserError as error:
            logger.debug(
                "Skipping attachment {0}: {1}".format(
                    attachment["filename"], error.__str__()
                )
            )
            continue

        if parsed_report["report_type"] == "aggregate":
            report = parsed_report["report"]
            results["aggregate_reports"].append(report)
            if store is not None:
                store.save_aggregate_report(report)
            if queue is not None and parsed_email["message_id"] is not None:
                if sender is None:
                    logger.warning("No sender address to reply to")
                    continue
                queue.enqueue(
                    build_reply_message(
                        parsed_email["message_id"],
                        sender["address"],
                        report["report_id"],
                        parsed_email["subject"],
                        delay=reply_delay,
                        now=now,
                    )
                )
        else:
            smtp_tls_report = parsed_report["report"]
            results["smtp_tls_reports"].append(smtp_tls_report)
            if store is not None:
                store.save_smtp_tls_report(smtp_tls_report)

    return results
