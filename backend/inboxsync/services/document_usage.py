"""
Monthly document usage counter.

One row per (user_id, month_year); incremented once per created document.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from inboxsync.db import supabase_admin

logger = logging.getLogger(__name__)


def month_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m")


def increment_document_usage(user_id: str, count: int = 1, now: Optional[datetime] = None) -> int:
    """Add count to this month's document_count and return the new total."""
    month_year = month_key(now)

    existing = (
        supabase_admin.table("document_usage")
        .select("document_count")
        .eq("user_id", user_id)
        .eq("month_year", month_year)
        .execute()
    )
    current = (existing.data[0].get("document_count") or 0) if existing.data else 0
    new_total = current + count

    supabase_admin.table("document_usage").upsert(
        {
            "user_id": user_id,
            "month_year": month_year,
            "document_count": new_total,
        },
        on_conflict="user_id,month_year",
    ).execute()

    logger.debug(f"Document usage for {user_id} in {month_year}: {new_total}")
    return new_total
