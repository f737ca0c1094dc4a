"""
Gmail push notifications (Cloud Pub/Sub push subscription).

Pub/Sub POST body:

  {
    "message": {
      "data": "<base64 of {\"emailAddress\": \"a@b.com\", \"historyId\": 12345}>",
      "messageId": "...",
      "publishTime": "..."
    },
    "subscription": "projects/.../subscriptions/..."
  }

A notification only says "something changed up to historyId"; the actual
messages are found with an incremental sync from the stored cursor.
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Optional

from inboxsync.models.gmail import (
    PushNotification,
    PushOutcome,
    SyncMode,
    TimeRange,
)
from inboxsync.services.sync_orchestrator import (
    MAX_MESSAGES_PER_RUN,
    SyncOrchestrator,
    active_connections,
)

logger = logging.getLogger(__name__)


def decode_push_envelope(body) -> Optional[PushNotification]:
    """Decode the Pub/Sub envelope; None when data is missing or malformed."""
    message = body.get("message") if isinstance(body, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not data or not isinstance(data, str):
        logger.warning("Push notification without message data")
        return None

    try:
        decoded = json.loads(base64.b64decode(data + "=" * (-len(data) % 4)))
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Undecodable push notification data: {e}")
        return None

    if not isinstance(decoded, dict):
        logger.warning("Push notification data is not a JSON object")
        return None

    email = decoded.get("emailAddress")
    history_id = decoded.get("historyId")
    if not email or history_id is None:
        logger.warning(f"Push notification missing emailAddress/historyId: {decoded}")
        return None

    try:
        return PushNotification(email_address=email, history_id=int(history_id))
    except (TypeError, ValueError):
        logger.warning(f"Push notification has non-numeric historyId {history_id!r}")
        return None


def handle_push(
    notification: PushNotification,
    now: Optional[datetime] = None,
) -> dict[str, PushOutcome]:
    """
    Run an incremental sync for every active connection of the mailbox.

    Returns the outcome per connection id. A notification at or behind the
    stored cursor is a duplicate and touches nothing. Errors are logged and
    reported as FAILED, never raised: Pub/Sub must always get a 2xx.
    """
    outcomes: dict[str, PushOutcome] = {}
    try:
        connections = active_connections(email=notification.email_address)
    except Exception as e:
        logger.error(f"Could not load connections for {notification.email_address}: {e}")
        return outcomes

    if not connections:
        logger.info(f"No active connection for {notification.email_address}")
        return outcomes

    for connection in connections:
        cursor = connection.history_cursor
        if cursor is not None and notification.history_id <= cursor:
            logger.info(
                f"Duplicate push for {connection.email}: "
                f"historyId {notification.history_id} <= stored {cursor}"
            )
            outcomes[connection.id] = PushOutcome.DUPLICATE
            continue

        try:
            result = SyncOrchestrator().run(
                connection,
                SyncMode.INCREMENTAL,
                TimeRange.DAY,
                target_history_id=notification.history_id,
                max_messages=MAX_MESSAGES_PER_RUN,
                now=now,
            )
        except Exception as e:
            logger.error(f"Push sync for {connection.email} failed: {e}")
            outcomes[connection.id] = PushOutcome.FAILED
            continue

        logger.info(
            f"Push sync for {connection.email}: created {result.documents_created} "
            f"document(s), cursor now {result.history_id}"
        )
        outcomes[connection.id] = PushOutcome.PROCESSED

    return outcomes
