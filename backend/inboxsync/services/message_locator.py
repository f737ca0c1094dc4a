"""
Message locator: which Gmail messages might carry an invoice.

Two strategies:
  - full search: a keyword query over messages.list bounded by a date
  - incremental: the messageAdded delta since a stored history cursor

An expired cursor never fails a run; it degrades to a one-day search.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from inboxsync.exceptions import CursorExpiredError
from inboxsync.models.gmail import LocateResult, SyncMode, TimeRange
from inboxsync.services.gmail_client import GmailClient

logger = logging.getLogger(__name__)

# Hebrew and English words that show up in invoice subjects and bodies
INVOICE_KEYWORDS = [
    "חשבונית", "קבלה", "חשבונית מס", "חשבון", "invoice", "receipt", "bill",
    "payment", "תשלום", "הזמנה", "order", "אישור תשלום", "confirmation",
]

MAX_CANDIDATES = 200
FALLBACK_DAYS = 1

_RANGE_DAYS = {
    TimeRange.DAY: 1,
    TimeRange.WEEK: 7,
    TimeRange.MONTH: 30,
    TimeRange.THREE_MONTHS: 90,
}


def after_date_for(time_range: TimeRange, now: Optional[datetime] = None) -> date:
    """Lower bound date for a time range; "year" is one calendar year back."""
    now = now or datetime.now(timezone.utc)
    today = now.date()
    if time_range in _RANGE_DAYS:
        return today - timedelta(days=_RANGE_DAYS[time_range])
    try:
        return today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29 -> Feb 28
        return today.replace(year=today.year - 1, day=28)


def build_search_query(after_date: date, keywords: Optional[list[str]] = None) -> str:
    """
    Gmail search query for invoice-looking messages after a date.

    Example:
        build_search_query(date(2024, 1, 1), ["invoice", "receipt"])
        -> '("invoice" OR "receipt") after:2024/01/01
            (has:attachment OR from:invoice OR from:receipt OR from:billing)'
    """
    keywords = INVOICE_KEYWORDS if keywords is None else keywords
    keyword_query = " OR ".join(f'"{k}"' for k in keywords)
    date_str = after_date.strftime("%Y/%m/%d")
    return (
        f"({keyword_query}) after:{date_str} "
        f"(has:attachment OR from:invoice OR from:receipt OR from:billing)"
    )


def _parse_history_id(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def search_candidates(
    client: GmailClient,
    after_date: date,
    cap: int = MAX_CANDIDATES,
) -> LocateResult:
    """
    Page through messages.list for the keyword query.

    The mailbox profile historyId is read before searching, so a cursor
    advanced to it never skips a message the search did not see.
    """
    profile = client.get_profile()
    latest_history_id = _parse_history_id(profile.get("historyId"))

    query = build_search_query(after_date)
    message_ids: set[str] = set()
    page_token = None

    while len(message_ids) < cap:
        page = client.search_messages(query, page_token=page_token)
        for message in page.get("messages") or []:
            message_ids.add(message["id"])
            if len(message_ids) >= cap:
                break
        page_token = page.get("nextPageToken")
        if not page_token:
            break

    logger.info(f"Search after {after_date.isoformat()} found {len(message_ids)} candidate(s)")
    return LocateResult(message_ids=message_ids, latest_history_id=latest_history_id)


def history_candidates(
    client: GmailClient,
    start_history_id: int,
    cap: int = MAX_CANDIDATES,
) -> LocateResult:
    """
    Collect ids of messages added since start_history_id.

    Raises:
        CursorExpiredError: Gmail can no longer resolve start_history_id.
    """
    message_ids: set[str] = set()
    latest_history_id: Optional[int] = None
    page_token = None

    while len(message_ids) < cap:
        page = client.list_history(start_history_id, page_token=page_token)
        page_history_id = _parse_history_id(page.get("historyId"))
        if page_history_id is not None:
            latest_history_id = max(latest_history_id or 0, page_history_id)

        for record in page.get("history") or []:
            for added in record.get("messagesAdded") or []:
                message_id = (added.get("message") or {}).get("id")
                if message_id:
                    message_ids.add(message_id)
                if len(message_ids) >= cap:
                    break
            if len(message_ids) >= cap:
                break

        page_token = page.get("nextPageToken")
        if not page_token:
            break

    logger.info(f"History since {start_history_id} added {len(message_ids)} message(s)")
    return LocateResult(message_ids=message_ids, latest_history_id=latest_history_id)


def locate_candidates(
    client: GmailClient,
    mode: SyncMode,
    cursor: Optional[int],
    after_date: date,
    now: Optional[datetime] = None,
) -> LocateResult:
    """
    Dispatch on mode.

    Incremental mode with no cursor, or with a cursor Gmail has expired,
    falls back to a full search over the last FALLBACK_DAYS day(s).
    """
    if mode == SyncMode.FULL:
        return search_candidates(client, after_date)

    if cursor is not None:
        try:
            return history_candidates(client, cursor)
        except CursorExpiredError:
            logger.warning(f"History cursor {cursor} expired, falling back to search")
    else:
        logger.info("No history cursor stored, falling back to search")

    now = now or datetime.now(timezone.utc)
    fallback_after = now.date() - timedelta(days=FALLBACK_DAYS)
    result = search_candidates(client, fallback_after)
    result.fell_back_to_search = True
    return result
