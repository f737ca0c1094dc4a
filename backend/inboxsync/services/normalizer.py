"""
Normalization service for invoice extraction results.

Converts raw ExtractedInvoice (Claude AI output) into InvoiceFields: values
checked against the fixed allow-lists the invoices table accepts, with
amounts parsed to floats and dates in ISO format.
"""

import re
import logging
from typing import Optional, Union

from inboxsync.models.document import ExtractedInvoice, InvoiceFields

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Allow-lists
# ---------------------------------------------------------------------------

CATEGORY_OTHER = "Other"

VALID_CATEGORIES = [
    "General & administrative",
    "Marketing & advertising",
    "Office expenses",
    "Travel & vehicle",
    "Professional services",
    "Equipment & computing",
    "Maintenance",
    "Supermarkets",
    CATEGORY_OTHER,
]

BUSINESS_VAT_LIABLE = "VAT-liable individual"
BUSINESS_VAT_EXEMPT = "VAT-exempt"
BUSINESS_COMPANY = "Ltd company"
BUSINESS_FOREIGN = "Foreign supplier"

VALID_BUSINESS_TYPES = [
    BUSINESS_VAT_LIABLE,
    BUSINESS_VAT_EXEMPT,
    BUSINESS_COMPANY,
    BUSINESS_FOREIGN,
]

DOC_TAX_INVOICE = "tax invoice"
DOC_TAX_INVOICE_RECEIPT = "tax invoice-receipt"
DOC_RECEIPT = "receipt"
DOC_CREDIT_INVOICE = "credit invoice"
DOC_TRANSACTION_ACCOUNT = "transaction account"
DOC_OTHER = "other"

VALID_DOCUMENT_TYPES = [
    DOC_TAX_INVOICE,
    DOC_TAX_INVOICE_RECEIPT,
    DOC_RECEIPT,
    DOC_CREDIT_INVOICE,
    DOC_TRANSACTION_ACCOUNT,
    DOC_OTHER,
]

# A VAT-exempt dealer cannot legally issue these, so an extraction that says
# otherwise has misread the business classification.
_TAX_INVOICE_TYPES = {DOC_TAX_INVOICE, DOC_TAX_INVOICE_RECEIPT}

# Lower-cased aliases (English variants plus the Hebrew labels the model
# often answers with) -> canonical value
_CATEGORY_MAP = {c.lower(): c for c in VALID_CATEGORIES}
_CATEGORY_MAP.update({
    "general and administrative": "General & administrative",
    "administration": "General & administrative",
    "הנהלה וכללי": "General & administrative",
    "marketing": "Marketing & advertising",
    "advertising": "Marketing & advertising",
    "שיווק ופרסום": "Marketing & advertising",
    "office": "Office expenses",
    "הוצאות משרד": "Office expenses",
    "travel": "Travel & vehicle",
    "vehicle": "Travel & vehicle",
    "נסיעות ורכב": "Travel & vehicle",
    "consulting": "Professional services",
    "ייעוץ מקצועי": "Professional services",
    "equipment": "Equipment & computing",
    "computing": "Equipment & computing",
    "ציוד ומחשוב": "Equipment & computing",
    "תחזוקה": "Maintenance",
    "groceries": "Supermarkets",
    "supermarket": "Supermarkets",
    "סופרים": "Supermarkets",
    "אחר": CATEGORY_OTHER,
})

_BUSINESS_TYPE_MAP = {b.lower(): b for b in VALID_BUSINESS_TYPES}
_BUSINESS_TYPE_MAP.update({
    "vat liable": BUSINESS_VAT_LIABLE,
    "licensed dealer": BUSINESS_VAT_LIABLE,
    "עוסק מורשה": BUSINESS_VAT_LIABLE,
    "vat exempt": BUSINESS_VAT_EXEMPT,
    "exempt dealer": BUSINESS_VAT_EXEMPT,
    "עוסק פטור": BUSINESS_VAT_EXEMPT,
    "company": BUSINESS_COMPANY,
    "ltd": BUSINESS_COMPANY,
    'חברה בע"מ': BUSINESS_COMPANY,
    "חברה בע״מ": BUSINESS_COMPANY,
    "foreign": BUSINESS_FOREIGN,
    'ספק חו"ל': BUSINESS_FOREIGN,
    "ספק חו״ל": BUSINESS_FOREIGN,
    "ספק חול": BUSINESS_FOREIGN,
})

_DOCUMENT_TYPE_MAP = {d: d for d in VALID_DOCUMENT_TYPES}
_DOCUMENT_TYPE_MAP.update({
    "invoice": DOC_TAX_INVOICE,
    "tax-invoice": DOC_TAX_INVOICE,
    "חשבונית מס": DOC_TAX_INVOICE,
    "tax invoice receipt": DOC_TAX_INVOICE_RECEIPT,
    "tax invoice/receipt": DOC_TAX_INVOICE_RECEIPT,
    "receipt-invoice": DOC_TAX_INVOICE_RECEIPT,
    "חשבונית מס קבלה": DOC_TAX_INVOICE_RECEIPT,
    "חשבונית מס/קבלה": DOC_TAX_INVOICE_RECEIPT,
    "קבלה": DOC_RECEIPT,
    "credit note": DOC_CREDIT_INVOICE,
    "חשבונית זיכוי": DOC_CREDIT_INVOICE,
    "חשבון עסקה": DOC_TRANSACTION_ACCOUNT,
})

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_monetary_value(value: Optional[Union[str, int, float]]) -> Optional[float]:
    """
    Parse a numeric amount from an extracted amount.

    Examples:
        1180          -> 1180.0
        "₪1,180.00"   -> 1180.0
        "1180 ILS"    -> 1180.0
        None          -> None
        ""            -> None
        "n/a"         -> None
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return float(value)

    if not isinstance(value, str) or not value.strip():
        return None

    cleaned = value.replace(",", "")
    match = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not match:
        logger.debug("parse_monetary_value: no numeric content in %r", value)
        return None

    try:
        return float(match.group(0))
    except ValueError:
        logger.debug("parse_monetary_value: could not convert %r to float", match.group(0))
        return None


def normalize_date(value: Optional[str]) -> Optional[str]:
    """
    Ensure a date string is in ISO 8601 format YYYY-MM-DD.

    Israeli invoices print day-first dates, so DD/MM/YYYY wins over the US
    order. Anything unparsable returns None and the caller falls back to the
    email date.

    Examples:
        "2024-01-31"   -> "2024-01-31"
        "31/01/2024"   -> "2024-01-31"
        "31.01.2024"   -> "2024-01-31"
        "January 2024" -> None
    """
    if not value or not isinstance(value, str):
        return None

    stripped = value.strip()

    if _ISO_DATE_RE.match(stripped):
        return stripped

    import datetime

    _FORMATS = [
        "%d/%m/%Y",    # "31/01/2024"
        "%d.%m.%Y",    # "31.01.2024"
        "%d-%m-%Y",    # "31-01-2024"
        "%Y/%m/%d",    # "2024/01/31"
        "%d/%m/%y",    # "31/01/24"
        "%B %d, %Y",   # "January 31, 2024"
        "%b %d, %Y",   # "Jan 31, 2024"
        "%d %B %Y",    # "31 January 2024"
        "%d %b %Y",    # "31 Jan 2024"
    ]

    for fmt in _FORMATS:
        try:
            parsed = datetime.datetime.strptime(stripped, fmt)
            return parsed.strftime("%Y-%m-%d")
        except ValueError:
            continue

    logger.debug("normalize_date: could not parse date string %r", value)
    return None


def _lookup(value: Optional[str], mapping: dict[str, str]) -> Optional[str]:
    if not value or not isinstance(value, str):
        return None
    return mapping.get(value.strip().lower())


def normalize_category(value: Optional[str]) -> str:
    """Map a category to the allow-list; unknown values become "Other"."""
    return _lookup(value, _CATEGORY_MAP) or CATEGORY_OTHER


def normalize_business_type(value: Optional[str]) -> Optional[str]:
    """Map a business classification to the allow-list, or None."""
    return _lookup(value, _BUSINESS_TYPE_MAP)


def normalize_document_type(value: Optional[str]) -> Optional[str]:
    """Map a document type to the allow-list; unknown non-empty values become "other"."""
    if not value or not isinstance(value, str):
        return None
    return _lookup(value, _DOCUMENT_TYPE_MAP) or DOC_OTHER


def correct_business_type(document_type: Optional[str], business_type: Optional[str]) -> Optional[str]:
    """
    Reconcile the business classification with the document type.

    A tax invoice (or tax invoice-receipt) issued by a "VAT-exempt" business
    is rewritten to "VAT-liable individual". Every other combination is
    returned unchanged.
    """
    if document_type in _TAX_INVOICE_TYPES and business_type == BUSINESS_VAT_EXEMPT:
        logger.info(
            "Business type corrected: %r cannot issue a %r, using %r",
            business_type, document_type, BUSINESS_VAT_LIABLE,
        )
        return BUSINESS_VAT_LIABLE
    return business_type


def normalize_extracted_invoice(extracted: ExtractedInvoice) -> InvoiceFields:
    """
    Convert raw ExtractedInvoice into InvoiceFields.

    This is the main entry point. It applies every parsing/normalisation
    helper and the business-type correction.
    """
    document_type = normalize_document_type(extracted.document_type)
    business_type = correct_business_type(
        document_type,
        normalize_business_type(extracted.business_type),
    )

    supplier = extracted.supplier_name.strip() if isinstance(extracted.supplier_name, str) else None
    number = extracted.document_number.strip() if isinstance(extracted.document_number, str) else None

    return InvoiceFields(
        supplier_name=supplier or None,
        document_number=number or None,
        document_type=document_type,
        document_date=normalize_date(extracted.document_date),
        amount_before_vat=parse_monetary_value(extracted.amount_before_vat),
        vat_amount=parse_monetary_value(extracted.vat_amount),
        total_amount=parse_monetary_value(extracted.total_amount),
        category=normalize_category(extracted.category),
        business_type=business_type,
    )
