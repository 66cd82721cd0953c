# -*- coding: utf-8 -*-

"""Acknowledgment replies to report senders"""

from __future__ import annotations

import smtplib
import ssl
import time
import uuid
from abc import ABC
from email.message import EmailMessage
from email.utils import formatdate
from typing import Optional

from dmarcworker.log import logger
from dmarcworker.types import ReplyMessage

DEFAULT_SUBJECT = "DMARC Report"


class ReplyError(RuntimeError):
    """Raised when a reply cannot be sent"""


class ReplySender(ABC):
    """
    Interface for the capability that delivers a queued reply

    ``send`` returns normally on success and raises on failure.
    """

    def send(self, message: ReplyMessage):
        raise NotImplementedError


def build_reply_message(
    message_id: str,
    reply_to: str,
    report_id: str,
    subject: Optional[str] = None,
    delay: float = 3600,
    now: Optional[int] = None,
) -> ReplyMessage:
    """
    Builds the queue payload for an acknowledgment reply

    Args:
        message_id (str): Message-ID of the report email
        reply_to (str): Address of the report sender
        report_id (str): ID of the processed report
        subject (str): Subject of the report email
        delay (float): Seconds to wait before replying
        now (int): Current time in epoch milliseconds

    Returns:
        dict: A reply message due ``delay`` seconds from ``now``
    """
    if now is None:
        now = int(time.time() * 1000)
    return {
        "message_id": message_id,
        "reply_to": reply_to,
        "report_id": report_id,
        "subject": subject or DEFAULT_SUBJECT,
        "send_at": now + int(delay * 1000),
    }


class SMTPReplySender(ReplySender):
    """Sends acknowledgment replies over SMTP"""

    def __init__(
        self,
        host: str,
        mail_from: str,
        domain: str,
        port: int = 0,
        starttls: bool = True,
        use_ssl: bool = False,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        """
        Initializes the SMTPReplySender

        Args:
            host (str): Mail server hostname or IP address
            mail_from (str): The value of the message from header
            domain (str): Domain used for Message-IDs and report links
            port (int): Port to use
            starttls (bool): use STARTTLS
            use_ssl (bool): Require an SSL connection from the start
            user (str): An optional username
            password (str): An optional password
            timeout (float): Connection timeout in seconds
            ssl_context: SSL context options
        """
        self.host = host
        self.mail_from = mail_from
        self.domain = domain
        self.port = port
        self.starttls = starttls
        self.use_ssl = use_ssl
        self.user = user
        self.password = password
        self.timeout = timeout
        self.ssl_context = ssl_context

    def create_email(self, message: ReplyMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.mail_from
        msg["To"] = message["reply_to"]
        msg["Date"] = formatdate(localtime=True)
        msg["Subject"] = "Re: {0} - Processed".format(message["subject"])
        msg["Message-ID"] = "<{0}@{1}>".format(uuid.uuid4(), self.domain)
        msg["In-Reply-To"] = message["message_id"]
        msg["References"] = message["message_id"]
        msg.set_content(
            "Your report {0} has been received and processed.\n\n"
            "View: https://{1}/reports/{0}\n".format(message["report_id"], self.domain)
        )
        return msg

    def send(self, message: ReplyMessage):
        msg = self.create_email(message)
        ssl_context = self.ssl_context
        try:
            if ssl_context is None:
                ssl_context = ssl.create_default_context()
            if self.use_ssl:
                server = smtplib.SMTP_SSL(
                    self.host,
                    port=self.port,
                    context=ssl_context,
                    timeout=self.timeout,
                )
                server.ehlo()
            else:
                server = smtplib.SMTP(self.host, port=self.port, timeout=self.timeout)
                server.ehlo()
                if self.starttls:
                    server.starttls(context=ssl_context)
                    server.ehlo()
            try:
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as error:
            raise ReplyError(
                "Unable to send reply for report {0}: {1}".format(
                    message["report_id"], error.__str__()
                )
            ) from error
        logger.info(
            "Sent reply for report {0} to {1}".format(
                message["report_id"], message["reply_to"]
            )
        )
