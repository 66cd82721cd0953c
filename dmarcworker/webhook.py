import json

import requests

from dmarcworker import parsed_smtp_tls_reports_to_csv_rows
from dmarcworker.constants import USER_AGENT
from dmarcworker.log import logger

AGGREGATE_COUNTERS = (
    "dkim_pass",
    "dkim_fail",
    "dkim_temperror",
    "spf_pass",
    "spf_fail",
    "spf_temperror",
)


class WebhookClient(object):
    """A client for webhooks"""

    def __init__(self, aggregate_url, smtp_tls_url, timeout=60):
        """
        Initializes the WebhookClient
        Args:
            aggregate_url (str): The aggregate report webhook url
            smtp_tls_url (str): The smtp_tls report webhook url
            timeout (int): The timeout to use when calling the webhooks
        """
        self.aggregate_url = aggregate_url
        self.smtp_tls_url = smtp_tls_url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": USER_AGENT,
                "Content-Type": "application/json",
            }
        )

    @staticmethod
    def aggregate_report_to_event(report):
        """Summarizes an aggregate report as an analytics event, without the
        raw XML"""
        return {
            "report_type": "aggregate",
            "org_name": report["org_name"],
            "domain": report["domain"],
            "report_id": report["report_id"],
            "counters": {counter: report[counter] for counter in AGGREGATE_COUNTERS},
        }

    def save_aggregate_report_to_webhook(self, report):
        if not self.aggregate_url:
            return
        payload = json.dumps(self.aggregate_report_to_event(report))
        self._send_to_webhook(self.aggregate_url, payload)

    def save_smtp_tls_report_to_webhook(self, report):
        if not self.smtp_tls_url:
            return
        payload = json.dumps(parsed_smtp_tls_reports_to_csv_rows(report))
        self._send_to_webhook(self.smtp_tls_url, payload)

    def _send_to_webhook(self, webhook_url, payload):
        try:
            response = self.session.post(
                webhook_url, data=payload, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as error_:
            logger.error("Webhook Error: {0}".format(error_.__str__()))

    def close(self):
        self.session.close()
