"""
Invoice extraction service.
Sends a PDF or image to Claude's vision API and parses the structured fields.
"""

import base64
import ipaddress
import json
import logging
import os
from typing import Optional, Tuple
from urllib.parse import urlparse

import anthropic
from pydantic import ValidationError

from inboxsync.exceptions import ExtractionFailure
from inboxsync.models.document import ExtractedInvoice
from inboxsync.services.normalizer import (
    VALID_BUSINESS_TYPES,
    VALID_CATEGORIES,
    VALID_DOCUMENT_TYPES,
)

logger = logging.getLogger(__name__)

# Model configuration
MODEL = "claude-sonnet-4-5-20250929"
MAX_TOKENS = 1024

EXTRACTION_PROMPT = """\
You are an invoice data extraction assistant for Israeli invoices and receipts.
Analyze the attached document and extract these fields:

- supplier_name: The business that issued the document (Hebrew name preferred)
- document_number: The invoice / receipt number
- document_type: One of: {document_types}
- document_date: The issue date in YYYY-MM-DD format
- amount_before_vat: Amount before VAT (number only)
- vat_amount: VAT amount (number only)
- total_amount: Total amount including VAT (number only)
- category: One of: {categories}
- business_type: One of: {business_types}

Rules:
- If a field is not found or cannot be read, set it to null.
- Amounts are plain numbers without currency symbols or thousands separators.
- A "tax invoice" is never issued by a VAT-exempt business.

Respond with ONLY valid JSON matching this schema:
{{
  "supplier_name": string | null,
  "document_number": string | null,
  "document_type": string | null,
  "document_date": string | null,
  "amount_before_vat": number | null,
  "vat_amount": number | null,
  "total_amount": number | null,
  "category": string | null,
  "business_type": string | null
}}
"""

_INTERNAL_HOSTS = {"localhost", "host.docker.internal", "kong", "supabase_kong"}


def build_prompt() -> str:
    return EXTRACTION_PROMPT.format(
        document_types=", ".join(VALID_DOCUMENT_TYPES),
        categories=", ".join(VALID_CATEGORIES),
        business_types=", ".join(VALID_BUSINESS_TYPES),
    )


def is_externally_fetchable(url: Optional[str]) -> bool:
    """
    True when the extraction service could download url itself.

    Local dev storage (http, localhost, private or docker-internal hosts)
    is unreachable from the API, so those files are sent inline.
    """
    if not url:
        return False
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.hostname:
        return False

    host = parsed.hostname.lower()
    if host in _INTERNAL_HOSTS or host.endswith(".internal") or host.endswith(".local"):
        return False

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (address.is_private or address.is_loopback or address.is_link_local)


def _media_type(mime_type: str) -> str:
    lower = mime_type.lower()
    if "pdf" in lower:
        return "application/pdf"
    if "png" in lower:
        return "image/png"
    if "gif" in lower:
        return "image/gif"
    if "webp" in lower:
        return "image/webp"
    return "image/jpeg"


def build_content_block(content: bytes, mime_type: str, url: Optional[str] = None) -> dict:
    """
    Claude content block for the file.

    PDFs always go inline as a document block. Images go by URL when the
    URL is publicly fetchable, otherwise inline.
    """
    media_type = _media_type(mime_type)

    if media_type == "application/pdf":
        return {
            "type": "document",
            "source": {
                "type": "base64",
                "media_type": media_type,
                "data": base64.standard_b64encode(content).decode("ascii"),
            },
        }

    if is_externally_fetchable(url):
        return {"type": "image", "source": {"type": "url", "url": url}}

    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.standard_b64encode(content).decode("ascii"),
        },
    }


def parse_extraction_response(raw_text: str) -> ExtractedInvoice:
    """
    Parse Claude's reply into ExtractedInvoice.

    Raises:
        ExtractionFailure: the reply is not a JSON object.
    """
    # Parse JSON (handle markdown code fences)
    json_text = raw_text.strip()
    if json_text.startswith("```"):
        lines = json_text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        json_text = "\n".join(lines)

    try:
        extracted_dict = json.loads(json_text)
    except json.JSONDecodeError as e:
        raise ExtractionFailure(f"Extraction reply is not valid JSON: {e}") from e

    if not isinstance(extracted_dict, dict):
        raise ExtractionFailure("Extraction reply is not a JSON object")

    try:
        return ExtractedInvoice(**extracted_dict)
    except ValidationError as e:
        raise ExtractionFailure(f"Extraction reply has unexpected field types: {e}") from e


def extract_invoice(
    content: bytes,
    mime_type: str,
    url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> Tuple[ExtractedInvoice, dict]:
    """
    Send an invoice file to Claude for extraction.

    Returns:
        (ExtractedInvoice, token_usage)

    Raises:
        ExtractionFailure: the API call failed or the reply was unusable.
    """
    if api_key is None:
        api_key = os.getenv("ANTHROPIC_API_KEY")

    if not api_key:
        raise ExtractionFailure("ANTHROPIC_API_KEY is not configured")

    client = anthropic.Anthropic(api_key=api_key)

    try:
        response = client.messages.create(
            model=MODEL,
            max_tokens=MAX_TOKENS,
            messages=[{
                "role": "user",
                "content": [
                    build_content_block(content, mime_type, url),
                    {"type": "text", "text": build_prompt()},
                ],
            }],
        )
    except anthropic.APIError as e:
        raise ExtractionFailure(f"Extraction API call failed: {e}") from e

    text = next(
        (block.text for block in response.content or [] if getattr(block, "type", None) == "text"),
        None,
    )
    if not text:
        raise ExtractionFailure("Extraction reply had no text block")

    extracted = parse_extraction_response(text)

    token_usage = {
        "input_tokens": response.usage.input_tokens,
        "output_tokens": response.usage.output_tokens,
        "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
    }
    logger.info(f"Extracted invoice fields ({token_usage['total_tokens']} tokens)")

    return extracted, token_usage
