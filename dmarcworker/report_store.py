# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import Optional

from dmarcworker.database import DatabaseError, SQLiteReportStore
from dmarcworker.log import logger
from dmarcworker.types import AggregateReport, SMTPTLSReport
from dmarcworker.webhook import WebhookClient


class ReportStore(object):
    """
    Saves parsed reports to every configured sink

    Saving is best-effort: a failing sink is logged and does not stop the
    remaining sinks, and nothing is raised to the caller.
    """

    def __init__(
        self,
        database: Optional[SQLiteReportStore] = None,
        webhook: Optional[WebhookClient] = None,
    ):
        self.database = database
        self.webhook = webhook

    def save_aggregate_report(self, report: AggregateReport) -> None:
        if self.database is not None:
            try:
                self.database.save_aggregate_report(report)
            except DatabaseError as error_:
                logger.error("Database Error: {0}".format(error_.__str__()))
        if self.webhook is not None:
            try:
                self.webhook.save_aggregate_report_to_webhook(report)
            except Exception as error_:
                logger.error("Webhook exception error: {0}".format(error_.__str__()))

    def save_smtp_tls_report(self, report: SMTPTLSReport) -> None:
        if self.database is not None:
            try:
                self.database.save_smtp_tls_report(report)
            except DatabaseError as error_:
                logger.error("Database Error: {0}".format(error_.__str__()))
        if self.webhook is not None:
            try:
                self.webhook.save_smtp_tls_report_to_webhook(report)
            except Exception as error_:
                logger.error("Webhook exception error: {0}".format(error_.__str__()))

    def close(self):
        if self.database is not None:
            self.database.close()
        if self.webhook is not None:
            self.webhook.close()
