"""
Fetch the raw bytes of invoice files referenced by a Gmail message.

Both helpers return None on any failure: a missing attachment or a dead
link skips that one unit and the message driver moves on to the next.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from inboxsync.exceptions import TransportError
from inboxsync.services.gmail_client import GmailClient
from inboxsync.services.message_parser import decode_base64url

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30.0
MAX_DOWNLOAD_BYTES = 10 * 1024 * 1024
MIN_DOWNLOAD_BYTES = 1024
BOT_USER_AGENT = "Mozilla/5.0 (compatible; InvoiceBot/1.0)"

_IMAGE_URL_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|bmp)(\?|$)", re.IGNORECASE)


@dataclass
class DownloadedFile:
    content: bytes
    filename: str
    mime_type: str


def fetch_attachment(client: GmailClient, message_id: str, attachment_id: str) -> Optional[bytes]:
    """Download and decode one attachment, or None if it cannot be read."""
    try:
        response = client.get_attachment(message_id, attachment_id)
    except TransportError as e:
        logger.warning(f"Attachment {attachment_id} of message {message_id} unavailable: {e}")
        return None

    data = response.get("data")
    if not data:
        logger.warning(f"Attachment {attachment_id} of message {message_id} has no data")
        return None

    try:
        return decode_base64url(data)
    except (ValueError, TypeError) as e:
        logger.warning(f"Attachment {attachment_id} of message {message_id} is not valid base64: {e}")
        return None


def _image_type(content_type: str) -> tuple[str, str]:
    """(extension, mime type) for an image response."""
    if "png" in content_type:
        return "png", "image/png"
    if "gif" in content_type:
        return "gif", "image/gif"
    if "webp" in content_type:
        return "webp", "image/webp"
    return "jpg", "image/jpeg"


def download_invoice_link(
    url: str,
    http_client: Optional[httpx.Client] = None,
) -> Optional[DownloadedFile]:
    """
    Download a file linked from an email body.

    Only direct PDF or image responses between 1 KB and 10 MB are accepted;
    HTML landing pages and everything else return None.
    """
    client = http_client or httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        response = client.get(
            url,
            headers={
                "User-Agent": BOT_USER_AGENT,
                "Accept": "application/pdf,image/*,*/*",
            },
        )
    except httpx.HTTPError as e:
        logger.warning(f"Link download failed for {url}: {e}")
        return None
    finally:
        if http_client is None:
            client.close()

    if response.status_code >= 400:
        logger.warning(f"Link download for {url} returned HTTP {response.status_code}")
        return None

    content_type = response.headers.get("content-type", "").lower()
    is_pdf = "pdf" in content_type or ".pdf" in url.lower()
    is_image = "image" in content_type or bool(_IMAGE_URL_RE.search(url))

    if not is_pdf and not is_image:
        if "html" in content_type:
            logger.info(f"Link {url} returned an HTML page, not a direct file")
        else:
            logger.info(f"Link {url} returned unsupported content type {content_type!r}")
        return None

    content = response.content
    if len(content) > MAX_DOWNLOAD_BYTES:
        logger.info(f"Link {url} file too large ({len(content)} bytes)")
        return None
    if len(content) < MIN_DOWNLOAD_BYTES:
        logger.info(f"Link {url} file too small ({len(content)} bytes), probably not an invoice")
        return None

    if is_image and not is_pdf:
        extension, mime_type = _image_type(content_type)
    else:
        extension, mime_type = "pdf", "application/pdf"

    return DownloadedFile(
        content=content,
        filename=f"gmail_link.{extension}",
        mime_type=mime_type,
    )
