"""
Pydantic models for Gmail mailbox connections and sync runs.

Models:
  GmailConnection       — DB row from gmail_connections
  AttachmentDescriptor  — one attachment part found in a message payload
  CandidateMessage      — a parsed message (transient, never persisted)
  LocateResult          — output of the message locator
  SyncResult            — summary of one orchestrator run
  PushNotification      — decoded Pub/Sub push body
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncState(str, Enum):
    IDLE = "idle"
    TOKEN_VALIDATED = "token_validated"
    MESSAGES_LOCATED = "messages_located"
    PROCESSING = "processing"
    COMMITTED = "committed"
    AUTH_EXPIRED = "auth_expired"


class TimeRange(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    THREE_MONTHS = "3months"
    YEAR = "year"


class PushOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Connection row
# ---------------------------------------------------------------------------

class GmailConnection(BaseModel):
    """Full gmail_connections record from the database."""
    model_config = {"extra": "ignore"}

    id: str
    user_id: str
    email: str
    account_label: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: datetime
    is_active: bool = True
    # historyId is stored as text; compare through history_cursor
    last_history_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    sync_lease_until: Optional[datetime] = None

    @property
    def history_cursor(self) -> Optional[int]:
        """The stored historyId as an int, or None when unset/unparsable."""
        if not self.last_history_id:
            return None
        try:
            return int(self.last_history_id)
        except ValueError:
            return None


class ConnectionSummary(BaseModel):
    """API response for a connection; never includes tokens."""
    id: str
    email: str
    account_label: Optional[str] = None
    is_active: bool
    last_sync_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Parsed message
# ---------------------------------------------------------------------------

class AttachmentDescriptor(BaseModel):
    """An attachment part that can be fetched with attachments.get."""
    filename: str
    attachment_id: str
    mime_type: str


class CandidateMessage(BaseModel):
    """
    A Gmail message after the MIME walk.

    body_links are the invoice-looking URLs found in the text/html parts,
    already filtered and capped.
    """
    message_id: str
    subject: str = ""
    sender: str = ""
    date: str = ""
    history_id: Optional[int] = None
    attachments: list[AttachmentDescriptor] = []
    body_links: list[str] = []

    @property
    def has_content(self) -> bool:
        return bool(self.attachments or self.body_links)


class LocateResult(BaseModel):
    message_ids: set[str] = Field(default_factory=set)
    latest_history_id: Optional[int] = None
    fell_back_to_search: bool = False


# ---------------------------------------------------------------------------
# Run summaries
# ---------------------------------------------------------------------------

class SyncResult(BaseModel):
    """Counts and final state for one connection's run."""
    connection_id: str
    email: str
    mode: SyncMode
    state: SyncState = SyncState.IDLE
    found: int = 0
    already_ingested: int = 0
    processed: int = 0
    documents_created: int = 0
    failed_messages: list[str] = []
    history_id: Optional[int] = None
    error: Optional[str] = None


class PushNotification(BaseModel):
    """The JSON object carried base64-encoded in a Pub/Sub push message."""
    email_address: str
    history_id: int


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class SyncRequest(BaseModel):
    """Body for POST /api/gmail/sync."""
    time_range: TimeRange = TimeRange.MONTH
    connection_id: Optional[str] = None


class AuthUrlRequest(BaseModel):
    redirect_url: str


class ConnectRequest(BaseModel):
    code: str
    redirect_url: str
    account_label: Optional[str] = None
