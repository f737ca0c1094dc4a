"""
Supabase Storage service for invoice files.
Handles upload, public URL resolution, and download from the invoices bucket.
"""

import os
import re
import time
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

from inboxsync.db import supabase_admin
from inboxsync.exceptions import StorageError

BUCKET = "invoices"


def _now_millis() -> int:
    return int(time.time() * 1000)


def sanitize_filename(filename: str) -> str:
    """Replace anything that is not a letter, digit, dot or dash with an underscore."""
    return re.sub(r"[^a-zA-Z0-9.\-]", "_", filename)


def guess_content_type(filename: str, mime_type: Optional[str] = None) -> str:
    if mime_type:
        return mime_type
    lower = filename.lower()
    if lower.endswith(".pdf"):
        return "application/pdf"
    if lower.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if lower.endswith(".png"):
        return "image/png"
    return "application/octet-stream"


def _rewrite_url_host(url: str) -> str:
    """
    Replace the host in a storage URL with the browser-accessible Supabase URL.

    When the backend runs inside Docker it uses an internal URL like
    ``http://host.docker.internal:54321`` so it can reach the Supabase API.
    Supabase embeds that internal host in every URL it generates, making
    those URLs unreachable from a browser (and from the extraction service).

    If ``SUPABASE_PUBLIC_URL`` is set it is used as the replacement origin.
    If the env var is not set the URL is returned unchanged, which is the
    correct behaviour for production deployments.
    """
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return url

    parsed_url = urlparse(url)
    parsed_public = urlparse(public_url)

    # Swap scheme + netloc; keep path/query/fragment from the original URL.
    return urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_url.path,
        parsed_url.params,
        parsed_url.query,
        parsed_url.fragment,
    ))


def _upload(storage_path: str, content: bytes, content_type: str) -> str:
    if not supabase_admin:
        raise StorageError("SUPABASE_SERVICE_KEY is required for storage operations")

    try:
        supabase_admin.storage.from_(BUCKET).upload(
            storage_path,
            content,
            {
                "content-type": content_type,
                "upsert": "false",  # Timestamped paths never collide
            },
        )
        public_url = supabase_admin.storage.from_(BUCKET).get_public_url(storage_path)
    except Exception as e:
        raise StorageError(f"Failed to upload {storage_path} to storage: {str(e)}") from e

    if not public_url:
        raise StorageError(f"No public URL returned for {storage_path}")

    return _rewrite_url_host(public_url)


def upload_invoice_file(
    content: bytes,
    user_id: str,
    filename: str,
    mime_type: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Upload an invoice file to Supabase Storage.

    Storage path: {user_id}/{epoch_millis}_{sanitized_filename}

    Returns:
        (storage_path, public_url)

    Raises:
        StorageError: If upload fails
    """
    storage_path = f"{user_id}/{_now_millis()}_{sanitize_filename(filename)}"
    public_url = _upload(storage_path, content, guess_content_type(filename, mime_type))
    return storage_path, public_url


def upload_preview_page(content: bytes, user_id: str, document_id: str, page_number: int) -> str:
    """
    Upload one rendered PDF page.

    Storage path: {user_id}/{epoch_millis}_{document_id}_page{n}.png

    Returns:
        Public URL of the page image
    """
    storage_path = f"{user_id}/{_now_millis()}_{document_id}_page{page_number}.png"
    return _upload(storage_path, content, "image/png")


def storage_path_from_url(url_or_path: str) -> str:
    """
    Extract the bucket-relative path from a public URL.

    Example:
        https://x.supabase.co/storage/v1/object/public/invoices/user-1/1_a.pdf
        -> "user-1/1_a.pdf"
    """
    if not url_or_path.startswith("http"):
        return url_or_path

    path = urlparse(url_or_path).path
    marker = f"/{BUCKET}/"
    parts = path.split("/object/", 1)
    if len(parts) > 1 and marker in f"/{parts[1]}":
        return f"/{parts[1]}".split(marker, 1)[1]
    return path.lstrip("/")


def download_file(url_or_path: str) -> bytes:
    """
    Download a file from the invoices bucket.

    Raises:
        StorageError: If the download fails or returns nothing
    """
    if not supabase_admin:
        raise StorageError("SUPABASE_SERVICE_KEY is required for storage operations")

    storage_path = storage_path_from_url(url_or_path)
    try:
        content = supabase_admin.storage.from_(BUCKET).download(storage_path)
    except Exception as e:
        raise StorageError(f"Failed to download {storage_path}: {str(e)}") from e

    if not content:
        raise StorageError(f"Empty download for {storage_path}")
    return content
