"""
Document materializer.

Turns one fetched file into an invoices row: upload to storage, extract with
Claude, normalize, persist, count usage. Also hosts the per-message driver
that picks which file of a message becomes the document.
"""

import logging
from datetime import datetime
from typing import Optional

from inboxsync.db import supabase_admin
from inboxsync.exceptions import ExtractionFailure, StorageError
from inboxsync.models.document import (
    DocumentStatus,
    FileSource,
    IngestPayload,
    InvoiceFields,
    PreviewStatus,
    StorageStatus,
)
from inboxsync.services.attachment_fetcher import download_invoice_link, fetch_attachment
from inboxsync.services.document_usage import increment_document_usage
from inboxsync.services.extractor import extract_invoice
from inboxsync.services.gmail_client import GmailClient
from inboxsync.services.message_parser import (
    parse_email_date,
    parse_message,
    supplier_from_sender,
)
from inboxsync.services.normalizer import CATEGORY_OTHER, normalize_extracted_invoice
from inboxsync.services.storage import upload_invoice_file

logger = logging.getLogger(__name__)

ENTRY_METHOD = "gmail_sync"


def _document_status(fields: InvoiceFields, extraction_ok: bool) -> DocumentStatus:
    if extraction_ok and fields.total_amount is not None and fields.total_amount > 0:
        return DocumentStatus.NEW
    return DocumentStatus.PENDING_MANUAL_REVIEW


def _extract_fields(payload: IngestPayload, public_url: str) -> tuple[InvoiceFields, bool]:
    try:
        extracted, _ = extract_invoice(payload.content, payload.mime_type, public_url)
    except ExtractionFailure as e:
        logger.warning(f"Extraction failed for {payload.filename}, flagging for manual review: {e}")
        return InvoiceFields(), False
    return normalize_extracted_invoice(extracted), True


def materialize(
    user_id: str,
    payload: IngestPayload,
    document_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Persist one file as a document and return the row.

    A failed extraction still produces a row with null financial fields and
    status pending_manual_review. The usage counter moves only when a new
    row is created, never on update.

    Raises:
        StorageError: the upload or the database write failed; nothing was
            persisted.
    """
    _, public_url = upload_invoice_file(
        payload.content, user_id, payload.filename, payload.mime_type
    )

    fields, extraction_ok = _extract_fields(payload, public_url)
    status = _document_status(fields, extraction_ok)

    row = {
        "user_id": user_id,
        "supplier_name": fields.supplier_name or supplier_from_sender(payload.sender),
        "document_number": fields.document_number,
        "document_type": fields.document_type,
        "document_date": fields.document_date or parse_email_date(payload.email_date),
        "amount_before_vat": fields.amount_before_vat,
        "vat_amount": fields.vat_amount,
        "total_amount": fields.total_amount,
        "category": fields.category or CATEGORY_OTHER,
        "business_type": fields.business_type,
        "status": status.value,
        "image_url": public_url,
        # PDFs get their preview from the background page renderer
        "preview_image_url": None if payload.is_pdf else public_url,
        "preview_status": (PreviewStatus.NONE if payload.is_pdf else PreviewStatus.CONVERTED).value,
        "additional_images": None,
        "file_name": payload.filename,
        "mime_type": payload.mime_type,
        "file_source": payload.file_source.value,
        "storage_status": StorageStatus.SUCCESS.value,
        "original_url": payload.original_url,
        "entry_method": ENTRY_METHOD,
        "source_message_id": payload.source_message_id,
    }

    if document_id:
        result = (
            supabase_admin.table("invoices")
            .update(row)
            .eq("id", document_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not result.data:
            raise StorageError(f"Document {document_id} not found for update")
        logger.info(f"Document {document_id} updated from {payload.filename} (status={status.value})")
        return result.data[0]

    result = supabase_admin.table("invoices").insert(row).execute()
    if not result.data:
        raise StorageError(f"Failed to save document for {payload.filename}")

    document = result.data[0]
    logger.info(
        f"Document {document.get('id')} created from {payload.filename} "
        f"(source={payload.file_source.value}, status={status.value})"
    )

    try:
        increment_document_usage(user_id, now=now)
    except Exception as e:
        # The document exists; a lost count must not turn it into a failed unit
        logger.error(f"Failed to increment document usage for {user_id}: {e}")
    return document


def document_exists_for_message(user_id: str, message_id: str) -> bool:
    result = (
        supabase_admin.table("invoices")
        .select("id")
        .eq("user_id", user_id)
        .eq("source_message_id", message_id)
        .limit(1)
        .execute()
    )
    return bool(result.data)


def ingested_message_ids(user_id: str, message_ids, chunk_size: int = 100) -> set[str]:
    """Subset of message_ids that already have an invoices row for this user."""
    ids = list(message_ids)
    ingested: set[str] = set()
    for start in range(0, len(ids), chunk_size):
        result = (
            supabase_admin.table("invoices")
            .select("source_message_id")
            .eq("user_id", user_id)
            .in_("source_message_id", ids[start:start + chunk_size])
            .execute()
        )
        ingested.update(row["source_message_id"] for row in result.data or [])
    return ingested


def _try_materialize(user_id: str, payload: IngestPayload) -> Optional[dict]:
    try:
        return materialize(user_id, payload)
    except StorageError as e:
        logger.warning(f"Skipping {payload.filename} of message {payload.source_message_id}: {e}")
        return None


def process_message(client: GmailClient, user_id: str, message_id: str) -> Optional[dict]:
    """
    Produce at most one document from a Gmail message.

    Attachments are tried in order, then body links; the first file that
    becomes a document wins. Returns the document row, or None when the
    message was already ingested, has nothing usable, or every unit failed.

    Raises:
        TransportError: the message itself could not be fetched.
        ParseError: the message payload could not be interpreted.
    """
    if document_exists_for_message(user_id, message_id):
        logger.info(f"Message {message_id} already ingested, skipping")
        return None

    candidate = parse_message(client.get_message(message_id))

    if not candidate.has_content:
        logger.debug(f"Message {message_id} has no attachments or invoice links")
        return None

    for attachment in candidate.attachments:
        content = fetch_attachment(client, message_id, attachment.attachment_id)
        if content is None:
            continue

        document = _try_materialize(user_id, IngestPayload(
            content=content,
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            file_source=FileSource.GMAIL_ATTACHMENT,
            sender=candidate.sender,
            email_date=candidate.date,
            source_message_id=message_id,
        ))
        if document:
            return document

    for link in candidate.body_links:
        downloaded = download_invoice_link(link)
        if downloaded is None:
            continue

        document = _try_materialize(user_id, IngestPayload(
            content=downloaded.content,
            filename=downloaded.filename,
            mime_type=downloaded.mime_type,
            file_source=FileSource.GMAIL_EXTERNAL_LINK,
            original_url=link,
            sender=candidate.sender,
            email_date=candidate.date,
            source_message_id=message_id,
        ))
        if document:
            return document

    logger.warning(f"Message {message_id} had candidates but none produced a document")
    return None
