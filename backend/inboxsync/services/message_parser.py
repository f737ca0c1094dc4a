"""
Gmail message parser.

Turns one users.messages.get (format=full) response into a CandidateMessage:
headers, attachment descriptors and invoice-looking body links. Pure (no
network or database access), so it can be tested against fixture payloads.

Gmail payload shape (abridged):

  {
    "id": "18c...",
    "historyId": "123456",
    "payload": {
      "mimeType": "multipart/mixed",
      "headers": [{"name": "Subject", "value": "..."}, ...],
      "body": {"size": 0},
      "parts": [
        {"mimeType": "text/html", "body": {"data": "<base64url>"}},
        {"mimeType": "application/pdf", "filename": "inv.pdf",
         "body": {"attachmentId": "ANGj...", "size": 48211}}
      ]
    }
  }
"""

import base64
import logging
import re
from datetime import date
from email.utils import parsedate_to_datetime
from typing import Optional

from inboxsync.exceptions import ParseError
from inboxsync.models.gmail import AttachmentDescriptor, CandidateMessage

logger = logging.getLogger(__name__)

# Deeper nesting than this is not produced by real mail clients
MAX_PART_DEPTH = 32

MAX_LINKS_PER_MESSAGE = 3

LINK_HINTS = ("invoice", "receipt", "bill", "payment", "download", "pdf", "view")

_URL_RE = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+")

_BODY_MIME_TYPES = ("text/plain", "text/html")


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's URL-safe base64, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


def _walk_parts(payload: dict):
    """
    Yield every part of the MIME tree in document order.

    Uses an explicit stack so a hostile payload cannot exhaust the
    interpreter's recursion limit; parts below MAX_PART_DEPTH are skipped.
    """
    stack = [(payload, 0)]
    while stack:
        part, depth = stack.pop()
        if not isinstance(part, dict):
            continue
        if depth > MAX_PART_DEPTH:
            logger.warning(f"Skipping MIME part nested {depth} levels deep")
            continue
        yield part
        children = part.get("parts") or []
        # Reverse so the left-most child is popped first
        for child in reversed(children):
            stack.append((child, depth + 1))


def find_attachments(payload: dict) -> list[AttachmentDescriptor]:
    """Every part with a filename and an attachmentId whose type is PDF or image."""
    attachments: list[AttachmentDescriptor] = []
    for part in _walk_parts(payload):
        filename = part.get("filename")
        attachment_id = (part.get("body") or {}).get("attachmentId")
        if not filename or not attachment_id:
            continue
        mime_type = (part.get("mimeType") or "").lower()
        if "pdf" in mime_type or "image" in mime_type:
            attachments.append(
                AttachmentDescriptor(
                    filename=filename,
                    attachment_id=attachment_id,
                    mime_type=mime_type,
                )
            )
    return attachments


def extract_body(payload: dict) -> str:
    """Concatenate every decoded text/plain and text/html part."""
    chunks: list[str] = []
    for part in _walk_parts(payload):
        if part.get("mimeType") not in _BODY_MIME_TYPES:
            continue
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        try:
            chunks.append(decode_base64url(data).decode("utf-8", errors="replace"))
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping undecodable body part: {e}")
    return "".join(chunks)


def find_invoice_links(body: str) -> list[str]:
    """
    Return up to MAX_LINKS_PER_MESSAGE URLs from body that look like they
    point at an invoice (contain one of LINK_HINTS, case-insensitive).
    """
    links: list[str] = []
    for url in _URL_RE.findall(body):
        lower = url.lower()
        if url in links or not any(hint in lower for hint in LINK_HINTS):
            continue
        links.append(url)
        if len(links) >= MAX_LINKS_PER_MESSAGE:
            break
    return links


def get_header(headers: list[dict], name: str) -> str:
    """Case-insensitive header lookup; missing headers return ""."""
    wanted = name.lower()
    for header in headers or []:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or ""
    return ""


def parse_message(message: dict) -> CandidateMessage:
    """
    Parse a users.messages.get response into a CandidateMessage.

    Raises:
        ParseError: the response has no id or no payload object.
    """
    if not isinstance(message, dict) or not message.get("id"):
        raise ParseError("Message has no id")

    payload = message.get("payload")
    if not isinstance(payload, dict):
        raise ParseError(f"Message {message['id']} has no payload")

    headers = payload.get("headers") or []

    history_id: Optional[int] = None
    if message.get("historyId"):
        try:
            history_id = int(message["historyId"])
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric historyId {message['historyId']!r}")

    return CandidateMessage(
        message_id=message["id"],
        subject=get_header(headers, "Subject"),
        sender=get_header(headers, "From"),
        date=get_header(headers, "Date"),
        history_id=history_id,
        attachments=find_attachments(payload),
        body_links=find_invoice_links(extract_body(payload)),
    )


# ---------------------------------------------------------------------------
# Header helpers used as extraction fallbacks
# ---------------------------------------------------------------------------

def supplier_from_sender(sender: str) -> str:
    """
    Best-effort supplier name from a From header.

    Examples:
        '"Acme Ltd" <billing@acme.com>'  -> "Acme Ltd"
        "<billing@acme.com>"             -> "Acme"
        "billing@acme.com"               -> "Acme"
        ""                               -> "Unknown"
    """
    name_match = re.match(r"^([^<]+)<", sender or "")
    if name_match:
        name = name_match.group(1).strip().replace('"', "")
        if name:
            return name

    domain_match = re.search(r"@([^.>]+)", sender or "")
    if domain_match:
        label = domain_match.group(1)
        return label[:1].upper() + label[1:]

    return "Unknown"


def parse_email_date(value: str, today: Optional[date] = None) -> str:
    """RFC 2822 Date header -> ISO date; unparsable values fall back to today."""
    try:
        return parsedate_to_datetime(value).date().isoformat()
    except (TypeError, ValueError, IndexError):
        return (today or date.today()).isoformat()
