"""
Pydantic models for ingested invoice documents (the invoices table).
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, field_validator


class FileSource(str, Enum):
    MANUAL_UPLOAD = "manual_upload"
    PUBLIC_LINK = "public_link"
    GMAIL_ATTACHMENT = "gmail_attachment"
    GMAIL_EXTERNAL_LINK = "gmail_external_link"


GMAIL_FILE_SOURCES = (FileSource.GMAIL_ATTACHMENT, FileSource.GMAIL_EXTERNAL_LINK)


class DocumentStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    HANDLED = "handled"
    PENDING_MANUAL_REVIEW = "pending_manual_review"


class StorageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class PreviewStatus(str, Enum):
    NONE = "none"
    CONVERTING = "converting"
    CONVERTED = "converted"


class ExtractedInvoice(BaseModel):
    """Raw extraction output from Claude. Every field may be missing."""
    model_config = {"extra": "ignore"}

    supplier_name: Optional[str] = None
    document_number: Optional[str] = None
    document_type: Optional[str] = None
    document_date: Optional[str] = None
    amount_before_vat: Optional[float | str] = None
    vat_amount: Optional[float | str] = None
    total_amount: Optional[float | str] = None
    category: Optional[str] = None
    business_type: Optional[str] = None

    @field_validator("supplier_name", "document_number", "document_date", mode="before")
    @classmethod
    def _numbers_to_text(cls, v):
        # Invoice numbers often come back as bare JSON numbers
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class InvoiceFields(BaseModel):
    """
    Normalized extraction fields, ready for the invoices row.

    Financial fields stay None when extraction failed so the row is
    clearly flagged for manual review rather than showing a zero total.
    """
    supplier_name: Optional[str] = None
    document_number: Optional[str] = None
    document_type: Optional[str] = None
    document_date: Optional[str] = None
    amount_before_vat: Optional[float] = None
    vat_amount: Optional[float] = None
    total_amount: Optional[float] = None
    category: Optional[str] = None
    business_type: Optional[str] = None


class IngestPayload(BaseModel):
    """One binary candidate for a Document, plus the hints the email gave us."""
    content: bytes
    filename: str
    mime_type: str
    file_source: FileSource
    original_url: Optional[str] = None
    sender: str = ""
    email_date: str = ""
    source_message_id: Optional[str] = None

    @property
    def is_pdf(self) -> bool:
        return "pdf" in self.mime_type.lower()


class PreviewTickResult(BaseModel):
    """Response body for one Background Normalizer tick."""
    skipped: bool = False
    selected: int = 0
    converted: int = 0
    failed: int = 0
