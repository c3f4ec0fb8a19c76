"""MIME parsing for providers that hand back raw RFC 822 bytes.

Walks the whole message once to pull out the envelope, the HTML body
(plain text is wrapped in ``<pre>`` when there is no HTML part), and
the attachment parts.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import html
from dataclasses import dataclass, field
from datetime import UTC, datetime


@dataclass
class MimeAttachment:
    """A single attachment part extracted from a MIME email."""

    id: str
    filename: str
    content_type: str
    payload: bytes


@dataclass
class ParsedEmail:
    """Structured representation of a fully parsed email."""

    message_id: str
    subject: str
    from_address: str
    recipients: list[str]
    date: datetime | None
    body_html: str
    references: list[str] = field(default_factory=list)
    attachments: list[MimeAttachment] = field(default_factory=list)


def parse_email(raw_bytes: bytes) -> ParsedEmail:
    """Parse raw RFC 822 bytes into a :class:`ParsedEmail`."""
    msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

    return ParsedEmail(
        message_id=str(msg.get("Message-ID", "")).strip(),
        subject=str(msg.get("Subject", "")),
        from_address=_first_address(msg.get("From")),
        recipients=_parse_address_list(msg.get_all("To", []) + msg.get_all("Cc", [])),
        date=_parse_date(msg.get("Date")),
        body_html=_extract_html(msg),
        references=str(msg.get("References", "")).split(),
        attachments=_extract_attachments(msg),
    )


def _extract_html(msg: email.message.Message) -> str:
    """Return the first HTML part, else the first plain part as ``<pre>``."""
    body_text: str | None = None
    body_html: str | None = None

    for part in msg.walk():
        # Skip multipart containers; they have no content of their own
        if part.get_content_maintype() == "multipart":
            continue
        if part.get_content_disposition() == "attachment":
            continue

        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        payload = _part_text(part)
        if content_type == "text/html" and body_html is None:
            body_html = payload
        elif content_type == "text/plain" and body_text is None:
            body_text = payload

    if body_html is not None:
        return body_html
    if body_text is not None:
        return f"<pre>{html.escape(body_text)}</pre>"
    return ""


def _extract_attachments(msg: email.message.Message) -> list[MimeAttachment]:
    """Collect attachment parts; IDs are their 1-based order in the message."""
    attachments: list[MimeAttachment] = []

    for part in msg.walk():
        if part.get_content_maintype() == "multipart":
            continue
        filename = part.get_filename()
        # Content-Disposition: attachment, or a named non-text part
        if part.get_content_disposition() != "attachment" and not filename:
            continue

        raw = part.get_payload(decode=True)
        if not isinstance(raw, bytes):
            continue

        attachments.append(
            MimeAttachment(
                id=str(len(attachments) + 1),
                filename=filename or "unnamed",
                content_type=part.get_content_type(),
                payload=raw,
            )
        )

    return attachments


def _part_text(part: email.message.Message) -> str:
    """Decode a text part, replacing undecodable bytes.

    Unknown or missing charsets fall back to UTF-8 so one badly labelled
    part cannot make the whole message unreadable.
    """
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _first_address(header_value: object) -> str:
    addresses = _parse_address_list([header_value] if header_value else [])
    return addresses[0] if addresses else ""


def _parse_address_list(header_values: list) -> list[str]:
    """Parse RFC 2822 address headers into a flat list of addresses."""
    if not header_values:
        return []
    return [addr for _, addr in email.utils.getaddresses([str(v) for v in header_values]) if addr]


def _parse_date(header_value: object) -> datetime | None:
    if not header_value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(str(header_value))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
