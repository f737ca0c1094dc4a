"""
Background PDF preview conversion.

Gmail-sourced PDFs are stored without a preview image. While a user's
session is active the frontend calls the convert endpoint periodically;
each call (a "tick") renders a small batch of PDFs to PNG pages with
pdfplumber and attaches the page URLs to the documents.

A document is claimed by moving preview_status none -> converting with a
conditional update, so two overlapping ticks never render the same PDF. The
claim is stamped with preview_claimed_at; a claim older than CLAIM_TTL
belongs to a tick that died mid-conversion and may be taken again.
"""

import logging
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Optional

import pdfplumber

from inboxsync.db import supabase_admin
from inboxsync.models.document import GMAIL_FILE_SOURCES, PreviewStatus, PreviewTickResult
from inboxsync.services.storage import download_file, upload_preview_page

logger = logging.getLogger(__name__)

THROTTLE_SECONDS = 60
BATCH_SIZE = 5
RENDER_RESOLUTION = 150
CLAIM_TTL = timedelta(minutes=10)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _claimable(now: datetime) -> str:
    """PostgREST filter: unclaimed, or claimed longer than CLAIM_TTL ago."""
    return (
        f"preview_status.is.null,preview_status.eq.{PreviewStatus.NONE.value},"
        f"and(preview_status.eq.{PreviewStatus.CONVERTING.value},"
        f"preview_claimed_at.lt.{_iso(now - CLAIM_TTL)})"
    )


def render_pdf_pages(content: bytes, resolution: int = RENDER_RESOLUTION) -> list[bytes]:
    """Render every page of a PDF to PNG bytes."""
    pages: list[bytes] = []
    with pdfplumber.open(BytesIO(content)) as pdf:
        for page in pdf.pages:
            buf = BytesIO()
            page.to_image(resolution=resolution).save(buf, format="PNG")
            pages.append(buf.getvalue())

    if not pages:
        raise ValueError("PDF has no pages")
    return pages


def find_pending_pdfs(
    user_id: str,
    limit: int = BATCH_SIZE,
    now: Optional[datetime] = None,
) -> list[dict]:
    now = now or datetime.now(timezone.utc)
    result = (
        supabase_admin.table("invoices")
        .select("id, user_id, image_url, mime_type, preview_status")
        .eq("user_id", user_id)
        .in_("file_source", [s.value for s in GMAIL_FILE_SOURCES])
        .ilike("mime_type", "%pdf%")
        .is_("preview_image_url", "null")
        .or_(_claimable(now))
        .limit(limit)
        .execute()
    )
    return result.data or []


def claim_document(document_id: str, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    result = (
        supabase_admin.table("invoices")
        .update({
            "preview_status": PreviewStatus.CONVERTING.value,
            "preview_claimed_at": _iso(now),
        })
        .eq("id", document_id)
        .or_(_claimable(now))
        .execute()
    )
    return bool(result.data)


def _release_claim(document_id: str) -> None:
    supabase_admin.table("invoices").update(
        {"preview_status": PreviewStatus.NONE.value, "preview_claimed_at": None}
    ).eq("id", document_id).eq("preview_status", PreviewStatus.CONVERTING.value).execute()


def convert_document(document: dict) -> list[str]:
    """Render and upload every page; returns the page URLs in order."""
    content = download_file(document["image_url"])
    page_urls = []
    for page_number, png in enumerate(render_pdf_pages(content), start=1):
        page_urls.append(
            upload_preview_page(png, document["user_id"], document["id"], page_number)
        )

    first, *rest = page_urls
    supabase_admin.table("invoices").update({
        "preview_image_url": first,
        "additional_images": rest or None,
        "preview_status": PreviewStatus.CONVERTED.value,
    }).eq("id", document["id"]).execute()
    return page_urls


class PreviewConverter:
    """Per-owner throttled batch converter."""

    def __init__(self, throttle_seconds: int = THROTTLE_SECONDS, batch_size: int = BATCH_SIZE):
        self.throttle = timedelta(seconds=throttle_seconds)
        self.batch_size = batch_size
        self._last_tick: dict[str, datetime] = {}

    def tick(self, user_id: str, now: Optional[datetime] = None) -> PreviewTickResult:
        now = now or datetime.now(timezone.utc)
        last = self._last_tick.get(user_id)
        if last is not None and now - last < self.throttle:
            return PreviewTickResult(skipped=True)
        self._last_tick[user_id] = now

        documents = find_pending_pdfs(user_id, self.batch_size, now)
        result = PreviewTickResult(selected=len(documents))

        for document in documents:
            if not claim_document(document["id"], now):
                logger.debug(f"Document {document['id']} already claimed")
                continue
            try:
                pages = convert_document(document)
            except Exception as e:
                logger.error(f"Preview conversion failed for {document['id']}: {e}")
                _release_claim(document["id"])
                result.failed += 1
                continue
            logger.info(f"Converted {document['id']} into {len(pages)} preview page(s)")
            result.converted += 1

        return result

    def end_session(self, user_id: str) -> None:
        self._last_tick.pop(user_id, None)


# Shared by the documents router; state lives for the process lifetime
preview_converter = PreviewConverter()
