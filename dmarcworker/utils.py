"""Utility functions that might be useful for other projects"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from datetime import timezone
from typing import List, Optional, Union

import mailparser
from dateutil.parser import parse as parse_date

from dmarcworker.log import logger
from dmarcworker.types import EmailAddress, EmailAttachment, ParsedEmail

parenthesis_regex = re.compile(r"\s*\(.*\)\s*")


class EmailParserError(RuntimeError):
    """Raised when an error parsing the email occurs"""


def decode_base64(data):
    """
    Decodes a base64 string, with padding being optional

    Args:
        data: A base64 encoded string

    Returns:
        bytes: The decoded bytes

    """
    data = bytes("".join(data.split()), encoding="ascii")
    missing_padding = len(data) % 4
    if missing_padding != 0:
        data += b"=" * (4 - missing_padding)
    return base64.b64decode(data, validate=True)


def human_timestamp_to_datetime(human_timestamp, to_utc=False):
    """
    Converts a human-readable timestamp into a Python ``datetime`` object

    Args:
        human_timestamp (str): A timestamp string
        to_utc (bool): Convert the timestamp to UTC

    Returns:
        datetime: The converted timestamp
    """

    human_timestamp = human_timestamp.replace("-0000", "")
    human_timestamp = parenthesis_regex.sub("", human_timestamp)

    dt = parse_date(human_timestamp)
    return dt.astimezone(timezone.utc) if to_utc else dt


def human_timestamp_to_unix_timestamp(human_timestamp) -> Optional[int]:
    """
    Converts a human-readable or ISO 8601 timestamp into a UNIX timestamp

    Args:
        human_timestamp (str): A timestamp such as ``2024-01-01T00:00:00Z``

    Returns:
        int: The converted timestamp in seconds, or ``None`` when the value
        cannot be parsed
    """
    if not isinstance(human_timestamp, str):
        return None
    human_timestamp = human_timestamp.replace("T", " ")
    try:
        return int(human_timestamp_to_datetime(human_timestamp).timestamp())
    except (ValueError, OverflowError) as e:
        logger.debug("Unable to parse timestamp {0}: {1}".format(human_timestamp, e))
        return None


def parse_email_address(original_address) -> EmailAddress:
    if original_address[0] == "":
        display_name = None
    else:
        display_name = original_address[0]
    address = original_address[1]
    address_parts = address.split("@")
    local = None
    domain = None
    if len(address_parts) > 1:
        local = address_parts[0].lower()
        domain = address_parts[-1].lower()

    return {
        "display_name": display_name,
        "address": address,
        "local": local,
        "domain": domain,
    }



def _decode_attachment_payload(attachment) -> bytes:
    payload = attachment["payload"]
    if attachment.get("content_transfer_encoding") == "base64":
        return decode_base64(payload)
    return str.encode(payload)


def parse_email(data: Union[str, bytes]) -> ParsedEmail:
    """
    A simplified email parser

    Args:
        data: The RFC 822 message string or bytes

    Returns:
        dict: Parsed email data, with decoded attachment payloads
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    try:
        parsed_email = mailparser.parse_from_string(data)
        headers = json.loads(parsed_email.headers_json).copy()
        mail = json.loads(parsed_email.mail_json).copy()
    except Exception as e:
        raise EmailParserError("Unable to parse email: {0}".format(e.__str__()))
    message = parsed_email.message

    from_address = None
    if mail.get("from"):
        from_address = parse_email_address(mail["from"][0])

    message_id = message.get("Message-ID")
    if message_id is not None:
        message_id = str(message_id).strip() or None

    attachments: List[EmailAttachment] = []
    for attachment in mail.get("attachments", []):
        if "payload" not in attachment:
            continue
        try:
            payload = _decode_attachment_payload(attachment)
        except ValueError as e:
            logger.debug("Unable to decode attachment: {0}".format(e.__str__()))
            continue
        if not payload:
            continue
        attachments.append(
            {
                "filename": attachment.get("filename"),
                "mail_content_type": attachment.get("mail_content_type"),
                "content_transfer_encoding": attachment.get(
                    "content_transfer_encoding"
                ),
                "binary": attachment.get("binary", False),
                "sha256": hashlib.sha256(payload).hexdigest(),
                "payload": payload,
            }
        )

    return {
        "headers": headers,
        "message_id": message_id,
        "subject": mail.get("subject"),
        "from": from_address,
        "authentication_results": [
            str(value) for value in message.get_all("Authentication-Results", [])
        ],
        "attachments": attachments,
    }
