"""Message normalizer: raw IMAP record → canonical :class:`Message`.

Normalization is pure data transformation, no I/O.  Structurally
unusable records yield ``None``; malformed optional fields fall back to
empty values instead of raising.
"""

from __future__ import annotations

import email
import email.errors
import email.parser
import email.policy
import email.utils
import re
from datetime import UTC, datetime
from email.message import EmailMessage

import structlog

from inboxsync_schema import Attachment, Message

from .models import RawRecord

logger = structlog.get_logger()

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Errors the stdlib email package raises on malformed headers or payloads.
_DECODE_ERRORS = (
    ValueError,
    TypeError,
    LookupError,
    AttributeError,
    email.errors.MessageError,
)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def normalize(record: RawRecord, account_id: str, folder: str) -> Message | None:
    """Convert *record* into a :class:`Message`, or ``None`` to skip it."""
    if record.header is None or record.text is None:
        logger.warning(
            "record_skipped",
            reason="missing_section",
            uid=record.uid,
            folder=folder,
            has_header=record.header is not None,
            has_text=record.text is not None,
        )
        return None

    header_block = record.header
    if not header_block.endswith((b"\r\n\r\n", b"\n\n")):
        header_block = header_block.rstrip(b"\r\n") + b"\r\n\r\n"

    msg = email.message_from_bytes(header_block + record.text, policy=email.policy.default)
    if not msg.keys():
        logger.warning("record_skipped", reason="empty_header_block", uid=record.uid, folder=folder)
        return None

    body_text, body_html = _extract_bodies(msg)
    if body_text is None and body_html is not None:
        body_text = _strip_tags(body_html)

    return Message(
        id=Message.make_id(account_id, record.uid),
        uid=record.uid,
        account_id=account_id,
        folder=folder,
        sender=_header(msg, "From"),
        to=_addresses(msg, "To"),
        cc=_addresses(msg, "Cc"),
        bcc=_addresses(msg, "Bcc"),
        subject=_header(msg, "Subject"),
        body=body_text or "",
        html_body=body_html,
        timestamp=_timestamp(msg, record.internal_date),
        flags=list(record.flags),
        attachments=_extract_attachments(msg),
    )


# ------------------------------------------------------------------
# Headers
# ------------------------------------------------------------------


def _header(msg: EmailMessage, name: str) -> str:
    try:
        value = msg.get(name)
        return str(value).strip() if value is not None else ""
    except _DECODE_ERRORS:
        logger.debug("header_undecodable", header=name)
        return ""


def _addresses(msg: EmailMessage, name: str) -> list[str]:
    """Parse an RFC 2822 address list into bare addresses."""
    try:
        values = msg.get_all(name) or []
        raw = [str(v) for v in values]
    except _DECODE_ERRORS:
        logger.debug("header_undecodable", header=name)
        return []
    return [addr for _, addr in email.utils.getaddresses(raw) if addr]


def _timestamp(msg: EmailMessage, internal_date: datetime | None) -> datetime:
    date_header = _header(msg, "Date")
    if date_header:
        try:
            parsed = email.utils.parsedate_to_datetime(date_header)
        except _DECODE_ERRORS:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    if internal_date is not None:
        return internal_date.astimezone(UTC)
    return EPOCH


# ------------------------------------------------------------------
# Bodies & attachments
# ------------------------------------------------------------------


def _extract_bodies(msg: EmailMessage) -> tuple[str | None, str | None]:
    """Walk MIME parts and return (plain_text, html_text)."""
    body_text: str | None = None
    body_html: str | None = None

    for part in msg.walk():
        # Multipart containers have no content of their own
        if part.get_content_maintype() == "multipart":
            continue
        if _is_attachment(part):
            continue

        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue

        payload = _text_content(part)
        if payload is None:
            continue
        if content_type == "text/plain" and body_text is None:
            body_text = payload
        elif content_type == "text/html" and body_html is None:
            body_html = payload

    return body_text, body_html


def _extract_attachments(msg: EmailMessage) -> list[Attachment]:
    attachments: list[Attachment] = []
    for part in msg.walk():
        if part.get_content_maintype() == "multipart" or not _is_attachment(part):
            continue
        try:
            filename = part.get_filename() or "unnamed"
        except _DECODE_ERRORS:
            filename = "unnamed"
        try:
            payload = part.get_payload(decode=True)
        except _DECODE_ERRORS:
            payload = None
        attachments.append(
            Attachment(
                filename=filename,
                content_type=part.get_content_type(),
                size=len(payload) if isinstance(payload, bytes) else 0,
            )
        )
    return attachments


def _is_attachment(part: EmailMessage) -> bool:
    """Content-Disposition: attachment, or a named non-text part."""
    try:
        disposition = str(part.get("Content-Disposition", ""))
        filename = part.get_filename()
    except _DECODE_ERRORS:
        return False
    if "attachment" in disposition.lower():
        return True
    return bool(filename) and part.get_content_maintype() != "text"


def _text_content(part: EmailMessage) -> str | None:
    try:
        content = part.get_content()
    except _DECODE_ERRORS:
        # Unknown charset or broken transfer encoding: fall back to a lossy decode
        raw = part.get_payload(decode=True)
        if not isinstance(raw, bytes):
            return None
        return raw.decode("utf-8", "replace")
    return content if isinstance(content, str) else None


def _strip_tags(html: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", html)).strip()
