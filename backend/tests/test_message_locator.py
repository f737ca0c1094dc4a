"""
Unit tests for the message locator (search + history delta).

The Gmail client is a Mock; no network calls.
"""

from datetime import date, datetime, timezone
from unittest.mock import Mock

import pytest

from inboxsync.exceptions import CursorExpiredError
from inboxsync.models.gmail import SyncMode, TimeRange
from inboxsync.services.message_locator import (
    INVOICE_KEYWORDS,
    after_date_for,
    build_search_query,
    history_candidates,
    locate_candidates,
    search_candidates,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _client(search_pages=None, history_pages=None, profile_history_id="9000"):
    client = Mock()
    client.get_profile.return_value = {"emailAddress": "me@example.com", "historyId": profile_history_id}
    client.search_messages.side_effect = list(search_pages or [{}])
    if isinstance(history_pages, Exception):
        client.list_history.side_effect = history_pages
    else:
        client.list_history.side_effect = list(history_pages or [{}])
    return client


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------

class TestBuildSearchQuery:

    def test_keywords_and_date(self):
        query = build_search_query(date(2024, 1, 1), ["invoice", "receipt"])

        assert '"invoice" OR "receipt"' in query
        assert "after:2024/01/01" in query
        assert "has:attachment OR from:invoice OR from:receipt OR from:billing" in query

    def test_default_keywords_include_hebrew(self):
        query = build_search_query(date(2024, 1, 1))

        for keyword in INVOICE_KEYWORDS:
            assert f'"{keyword}"' in query
        assert '"חשבונית"' in query


class TestAfterDateFor:

    @pytest.mark.parametrize("time_range, expected", [
        (TimeRange.DAY, date(2024, 3, 14)),
        (TimeRange.WEEK, date(2024, 3, 8)),
        (TimeRange.MONTH, date(2024, 2, 14)),
        (TimeRange.THREE_MONTHS, date(2023, 12, 16)),
        (TimeRange.YEAR, date(2023, 3, 15)),
    ])
    def test_ranges(self, time_range, expected):
        assert after_date_for(time_range, NOW) == expected

    def test_year_from_leap_day(self):
        leap = datetime(2024, 2, 29, tzinfo=timezone.utc)

        assert after_date_for(TimeRange.YEAR, leap) == date(2023, 2, 28)


# ---------------------------------------------------------------------------
# Full search
# ---------------------------------------------------------------------------

class TestSearchCandidates:

    def test_follows_pages_until_exhausted(self):
        client = _client(search_pages=[
            {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
            {"messages": [{"id": "c"}]},
        ])

        result = search_candidates(client, date(2024, 1, 1))

        assert result.message_ids == {"a", "b", "c"}
        assert client.search_messages.call_count == 2
        assert client.search_messages.call_args_list[1].kwargs["page_token"] == "p2"

    def test_reads_profile_history_id(self):
        client = _client(search_pages=[{"messages": [{"id": "a"}]}], profile_history_id="12345")

        result = search_candidates(client, date(2024, 1, 1))

        assert result.latest_history_id == 12345
        client.get_profile.assert_called_once()

    def test_respects_cap(self):
        client = _client(search_pages=[
            {"messages": [{"id": str(i)} for i in range(100)], "nextPageToken": "p2"},
            {"messages": [{"id": str(i)} for i in range(100, 200)], "nextPageToken": "p3"},
        ])

        result = search_candidates(client, date(2024, 1, 1), cap=150)

        assert len(result.message_ids) == 150
        assert client.search_messages.call_count == 2

    def test_empty_mailbox(self):
        client = _client(search_pages=[{"resultSizeEstimate": 0}])

        result = search_candidates(client, date(2024, 1, 1))

        assert result.message_ids == set()


# ---------------------------------------------------------------------------
# History delta
# ---------------------------------------------------------------------------

class TestHistoryCandidates:

    def test_collects_added_messages_across_pages(self):
        client = _client(history_pages=[
            {
                "history": [
                    {"id": "101", "messagesAdded": [{"message": {"id": "m1"}}]},
                    {"id": "102", "messages": [{"id": "ignored"}]},
                ],
                "historyId": "150",
                "nextPageToken": "h2",
            },
            {
                "history": [{"id": "160", "messagesAdded": [{"message": {"id": "m2"}}, {"message": {"id": "m1"}}]}],
                "historyId": "170",
            },
        ])

        result = history_candidates(client, 100)

        assert result.message_ids == {"m1", "m2"}
        assert result.latest_history_id == 170
        client.list_history.assert_any_call(100, page_token=None)
        client.list_history.assert_any_call(100, page_token="h2")

    def test_no_changes(self):
        client = _client(history_pages=[{"historyId": "100"}])

        result = history_candidates(client, 100)

        assert result.message_ids == set()
        assert result.latest_history_id == 100

    def test_expired_cursor_propagates(self):
        client = _client(history_pages=CursorExpiredError("too old", status_code=404))

        with pytest.raises(CursorExpiredError):
            history_candidates(client, 1)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestLocateCandidates:

    def test_full_mode_searches(self):
        client = _client(search_pages=[{"messages": [{"id": "a"}]}])

        result = locate_candidates(client, SyncMode.FULL, 500, date(2024, 1, 1), now=NOW)

        assert result.message_ids == {"a"}
        assert not result.fell_back_to_search
        client.list_history.assert_not_called()

    def test_incremental_uses_history(self):
        client = _client(history_pages=[{
            "history": [{"messagesAdded": [{"message": {"id": "m1"}}]}],
            "historyId": "600",
        }])

        result = locate_candidates(client, SyncMode.INCREMENTAL, 500, date(2024, 1, 1), now=NOW)

        assert result.message_ids == {"m1"}
        assert result.latest_history_id == 600
        client.search_messages.assert_not_called()

    def test_expired_cursor_falls_back_to_one_day_search(self):
        client = _client(
            search_pages=[{"messages": [{"id": "a"}]}],
            history_pages=CursorExpiredError("too old", status_code=404),
        )

        result = locate_candidates(client, SyncMode.INCREMENTAL, 1, date(2023, 1, 1), now=NOW)

        assert result.fell_back_to_search
        assert result.message_ids == {"a"}
        query = client.search_messages.call_args.args[0]
        assert "after:2024/03/14" in query

    def test_missing_cursor_falls_back_to_search(self):
        client = _client(search_pages=[{"messages": [{"id": "a"}]}])

        result = locate_candidates(client, SyncMode.INCREMENTAL, None, date(2023, 1, 1), now=NOW)

        assert result.fell_back_to_search
        client.list_history.assert_not_called()
