"""
Thin Gmail REST API client.

Wraps the handful of users.* endpoints the sync engine needs. Rate limits
(429), server errors (5xx) and timeouts are retried with exponential
backoff; every other failure is raised as TransportError so callers can
skip the unit they were working on.
"""

import logging
from typing import Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from inboxsync.exceptions import CursorExpiredError, TransportError

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
REQUEST_TIMEOUT = 30.0
MAX_ATTEMPTS = 4
PAGE_SIZE = 100


def _is_retryable(exc: BaseException) -> bool:
    """Retry rate limits, server errors and timeouts; never 4xx like 404."""
    if isinstance(exc, CursorExpiredError):
        return False
    if isinstance(exc, TransportError):
        if exc.status_code is None:
            # Timeouts are wrapped without a status code
            return isinstance(exc.__cause__, httpx.TimeoutException)
        return exc.status_code == 429 or exc.status_code >= 500
    return False


class GmailClient:
    """Gmail API client bound to one access token."""

    def __init__(self, access_token: str, http_client: Optional[httpx.Client] = None):
        self.access_token = access_token
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=REQUEST_TIMEOUT)

    def __enter__(self) -> "GmailClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    # ------------------------------------------------------------------
    # HTTP helper
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential(multiplier=0.5, max=8),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        url = f"{GMAIL_API_BASE}{path}"
        try:
            response = self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Gmail {method} {path} failed: {e}") from e

        if response.status_code == 429:
            logger.warning(f"Gmail rate limited on {path} (Retry-After={response.headers.get('Retry-After')})")

        if response.status_code >= 400:
            raise TransportError(
                f"Gmail {method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json() if response.content else {}
        except ValueError as e:
            raise TransportError(f"Gmail {method} {path} returned invalid JSON") from e

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def search_messages(self, query: str, page_token: Optional[str] = None) -> dict:
        """users.messages.list: returns {"messages": [{"id": ...}], "nextPageToken": ...}."""
        params = {"q": query, "maxResults": PAGE_SIZE}
        if page_token:
            params["pageToken"] = page_token
        return self._request("GET", "/messages", params=params)

    def list_history(self, start_history_id: int, page_token: Optional[str] = None) -> dict:
        """
        users.history.list restricted to messageAdded events.

        Raises:
            CursorExpiredError: Gmail answered 404, the start id is too old.
        """
        params = {
            "startHistoryId": str(start_history_id),
            "historyTypes": "messageAdded",
            "maxResults": PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        try:
            return self._request("GET", "/history", params=params)
        except TransportError as e:
            if e.status_code == 404:
                raise CursorExpiredError(
                    f"historyId {start_history_id} is too old to resolve", status_code=404
                ) from e
            raise

    def get_message(self, message_id: str) -> dict:
        return self._request("GET", f"/messages/{message_id}", params={"format": "full"})

    def get_attachment(self, message_id: str, attachment_id: str) -> dict:
        return self._request("GET", f"/messages/{message_id}/attachments/{attachment_id}")

    def get_profile(self) -> dict:
        return self._request("GET", "/profile")

    def watch(self, topic_name: str, label_ids: Optional[list[str]] = None) -> dict:
        """users.watch: (re)register the Pub/Sub push subscription."""
        body = {"topicName": topic_name, "labelIds": label_ids or ["INBOX"]}
        return self._request("POST", "/watch", json_body=body)
